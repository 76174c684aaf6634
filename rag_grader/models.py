"""
Database models for topics, grading sessions and the retrieval corpus
"""
import enum
import uuid
from datetime import datetime, timezone
from typing import Dict, Any
from sqlalchemy import (
    Column, Integer, SmallInteger, Text, String, DateTime, Numeric, JSON,
    ForeignKey, Index, UniqueConstraint, func
)
from sqlalchemy import Uuid
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import declarative_base, relationship
from pgvector.sqlalchemy import Vector

from rag_grader.config import settings

Base = declarative_base()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AnswerLevel(enum.IntEnum):
    """Reference answer level; the value is the anchor score"""
    LOW = 50
    MEDIUM = 75
    HIGH = 100

    @property
    def label(self) -> str:
        return self.name.lower()

    @classmethod
    def parse(cls, value: Any) -> "AnswerLevel":
        """Map a model-supplied level case-insensitively, unknown values to LOW"""
        if isinstance(value, str):
            try:
                return cls[value.strip().upper()]
            except KeyError:
                return cls.LOW
        return cls.LOW


class Topic(Base):
    """Teacher topic with ordered questions and an optional conspectus"""
    __tablename__ = "topics"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    title = Column(String(200), nullable=False)
    created_utc = Column(DateTime(timezone=True), nullable=False, default=_utcnow, server_default=func.now())
    conspect = Column(Text, nullable=True)
    teacher_id = Column(String(128), nullable=True, index=True)

    questions = relationship(
        "Question",
        order_by="Question.position",
        cascade="all, delete-orphan",
        lazy="selectin",
    )


class Question(Base):
    __tablename__ = "questions"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    topic_id = Column(Uuid(as_uuid=True), ForeignKey("topics.id", ondelete="CASCADE"), nullable=False, index=True)
    position = Column(Integer, nullable=False, default=0)
    text = Column(String(4000), nullable=False)

    generated = relationship(
        "GeneratedAnswer",
        order_by="GeneratedAnswer.level.desc()",
        cascade="all, delete-orphan",
        lazy="selectin",
    )


class GeneratedAnswer(Base):
    """Calibrated reference answer; level holds the anchor score"""
    __tablename__ = "generated_answers"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    question_id = Column(Uuid(as_uuid=True), ForeignKey("questions.id", ondelete="CASCADE"), nullable=False, index=True)
    level = Column(SmallInteger, nullable=False)
    text = Column(String(8000), nullable=False)

    @property
    def answer_level(self) -> AnswerLevel:
        return AnswerLevel(self.level)


class StudentSession(Base):
    __tablename__ = "student_sessions"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    student_id = Column(String(128), nullable=False, index=True)
    topic_id = Column(Uuid(as_uuid=True), ForeignKey("topics.id", ondelete="RESTRICT"), nullable=False)
    started_utc = Column(DateTime(timezone=True), nullable=False, default=_utcnow, server_default=func.now())

    __table_args__ = (
        UniqueConstraint("topic_id", "student_id", name="uq_student_sessions_topic_student"),
    )


class StudentResponse(Base):
    __tablename__ = "student_responses"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    session_id = Column(Uuid(as_uuid=True), ForeignKey("student_sessions.id", ondelete="CASCADE"), nullable=False)
    question_id = Column(Uuid(as_uuid=True), ForeignKey("questions.id", ondelete="RESTRICT"), nullable=False)
    answer = Column(String(8000), nullable=False)

    __table_args__ = (
        UniqueConstraint("session_id", "question_id", name="uq_student_responses_session_question"),
    )


class Evaluation(Base):
    """Write-once grading result for a session"""
    __tablename__ = "evaluations"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    session_id = Column(
        Uuid(as_uuid=True),
        ForeignKey("student_sessions.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )
    total_score = Column(Numeric(5, 2), nullable=False)
    report_json = Column(JSON().with_variant(JSONB(), "postgresql"), nullable=False)
    created_utc = Column(DateTime(timezone=True), nullable=False, default=_utcnow, server_default=func.now())


class RagDocument(Base):
    """Retrieval corpus entry with a fixed-dimension embedding"""
    __tablename__ = "rag_documents"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    source = Column(String(512), nullable=True)
    content = Column(String(10000), nullable=False)
    embedding = Column(Vector(settings.embedding_dim), nullable=False)

    __table_args__ = (
        Index(
            "ix_rag_documents_embedding_l2",
            "embedding",
            postgresql_using="hnsw",
            postgresql_with={"m": 16, "ef_construction": 64},
            postgresql_ops={"embedding": "vector_l2_ops"},
        ),
    )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": str(self.id),
            "source": self.source,
            "content": self.content,
        }


# Roster tables owned by the class management module; read here for authorization
class SchoolClass(Base):
    __tablename__ = "school_classes"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name = Column(String(200), nullable=False)
    owner_teacher_id = Column(String(128), nullable=False, index=True)


class ClassMember(Base):
    __tablename__ = "class_members"

    class_id = Column(Uuid(as_uuid=True), ForeignKey("school_classes.id", ondelete="CASCADE"), primary_key=True)
    user_id = Column(String(128), primary_key=True)
    joined_utc = Column(DateTime(timezone=True), nullable=False, default=_utcnow, server_default=func.now())

    __table_args__ = (
        Index("ix_class_members_user", "user_id"),
    )
