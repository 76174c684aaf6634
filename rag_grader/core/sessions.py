"""
Student session lifecycle: idempotent creation, answer upserts and read models
"""
from datetime import datetime, timedelta, timezone
from typing import Iterable, List, Optional, Sequence, Tuple
from uuid import UUID
import uuid

import structlog
from sqlalchemy import distinct, func, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from rag_grader.core.exceptions import NotFoundError, ValidationError
from rag_grader.core.generation import DEFAULT_PAGE_SIZE, normalize_paging, topic_out
from rag_grader.core.logging import log_execution_time
from rag_grader.db import async_session, dialect_name
from rag_grader.models import (
    ClassMember, Evaluation, Question, SchoolClass, StudentResponse, StudentSession, Topic
)
from rag_grader.schemas import EvaluationSummary, Page, ResponseOut, SessionDetail, SessionListItem, TeacherOverview

logger = structlog.get_logger(__name__)

MAX_STUDENT_ID_LENGTH = 128
MAX_ANSWER_LENGTH = 8000
ACTIVITY_WINDOW = timedelta(days=7)


def _dialect_insert(db: AsyncSession):
    """INSERT construct that supports ON CONFLICT for the bound dialect"""
    name = dialect_name(db)
    if name == "postgresql":
        return postgresql.insert
    if name == "sqlite":
        return sqlite.insert
    raise NotImplementedError(f"Upserts are not supported on '{name}'")


class SessionService:
    """Creates sessions, stores answers and serves session read models"""

    def __init__(self, session_factory: Optional[async_sessionmaker[AsyncSession]] = None):
        self.session_factory = session_factory or async_session

    @log_execution_time
    async def create_session(self, topic_id: UUID, student_id: str) -> UUID:
        """Existing session id for (topic, student), or a new one"""
        student_id = (student_id or "").strip()
        if not student_id or len(student_id) > MAX_STUDENT_ID_LENGTH:
            raise ValidationError("Invalid student id")

        async with self.session_factory() as db:
            exists = await db.scalar(select(Topic.id).where(Topic.id == topic_id))
            if exists is None:
                raise NotFoundError("Topic not found", {"topic_id": str(topic_id)})

            insert = _dialect_insert(db)
            stmt = (
                insert(StudentSession)
                .values(id=uuid.uuid4(), topic_id=topic_id, student_id=student_id,
                        started_utc=datetime.now(timezone.utc))
                .on_conflict_do_nothing(index_elements=["topic_id", "student_id"])
            )
            await db.execute(stmt)
            await db.commit()

            session_id = await db.scalar(
                select(StudentSession.id).where(
                    StudentSession.topic_id == topic_id,
                    StudentSession.student_id == student_id,
                )
            )

        logger.info("Session ready", session_id=str(session_id), topic_id=str(topic_id), student_id=student_id)
        return session_id

    @log_execution_time
    async def submit_answers(self, session_id: UUID, answers: Iterable[Tuple[UUID, str]]) -> List[ResponseOut]:
        """Insert or replace the response for each submitted question in one transaction"""
        pairs = [(qid, answer if answer is not None else "") for qid, answer in answers]
        if not pairs:
            raise ValidationError("At least one answer is required")

        seen = set()
        for qid, answer in pairs:
            if qid in seen:
                raise ValidationError("Duplicate question in submission", {"question_id": str(qid)})
            seen.add(qid)
            if len(answer) > MAX_ANSWER_LENGTH:
                raise ValidationError(f"Answer exceeds {MAX_ANSWER_LENGTH} characters",
                                      {"question_id": str(qid), "length": len(answer)})

        async with self.session_factory() as db:
            student_session = await db.get(StudentSession, session_id)
            if student_session is None:
                raise NotFoundError("Session not found", {"session_id": str(session_id)})

            topic_questions = set((await db.scalars(
                select(Question.id).where(Question.topic_id == student_session.topic_id)
            )).all())
            unknown = [str(qid) for qid, _ in pairs if qid not in topic_questions]
            if unknown:
                raise ValidationError("Questions do not belong to the session's topic",
                                      {"question_ids": unknown})

            insert = _dialect_insert(db)
            stmt = insert(StudentResponse).values([
                {"id": uuid.uuid4(), "session_id": session_id, "question_id": qid, "answer": answer}
                for qid, answer in pairs
            ])
            stmt = stmt.on_conflict_do_update(
                index_elements=["session_id", "question_id"],
                set_={"answer": stmt.excluded.answer},
            )
            await db.execute(stmt)
            await db.commit()

        logger.info("Answers submitted", session_id=str(session_id), count=len(pairs))
        return [ResponseOut(question_id=qid, answer=answer) for qid, answer in pairs]

    async def get_session(self, session_id: UUID) -> SessionDetail:
        async with self.session_factory() as db:
            student_session = await db.get(StudentSession, session_id)
            if student_session is None:
                raise NotFoundError("Session not found", {"session_id": str(session_id)})
            topic = await db.get(Topic, student_session.topic_id)
            if topic is None:
                raise NotFoundError("Topic not found", {"topic_id": str(student_session.topic_id)})

            positions = {q.id: q.position for q in topic.questions}
            responses = (await db.scalars(
                select(StudentResponse).where(StudentResponse.session_id == session_id)
            )).all()
            evaluation = await db.scalar(select(Evaluation).where(Evaluation.session_id == session_id))

            return SessionDetail(
                id=student_session.id,
                student_id=student_session.student_id,
                started_utc=student_session.started_utc,
                topic=topic_out(topic),
                responses=[
                    ResponseOut(question_id=r.question_id, answer=r.answer)
                    for r in sorted(responses, key=lambda r: positions.get(r.question_id, 0))
                ],
                evaluation=EvaluationSummary(
                    id=evaluation.id,
                    total_score=evaluation.total_score,
                    created_utc=evaluation.created_utc,
                ) if evaluation else None,
            )

    async def list_sessions_for_student(self, student_id: str, page: int = 1,
                                        page_size: int = DEFAULT_PAGE_SIZE) -> Page:
        return await self.list_sessions_for_students([student_id], page, page_size)

    async def list_sessions_for_students(self, student_ids: Sequence[str], page: int = 1,
                                         page_size: int = DEFAULT_PAGE_SIZE) -> Page:
        """Newest sessions first across the given students"""
        page, page_size = normalize_paging(page, page_size)
        ids = list(dict.fromkeys(s for s in student_ids if s))
        if not ids:
            return Page(items=[], total=0, page=page, page_size=page_size)

        async with self.session_factory() as db:
            total = await db.scalar(
                select(func.count()).select_from(StudentSession).where(StudentSession.student_id.in_(ids))
            )
            rows = await db.execute(
                select(
                    StudentSession.id,
                    StudentSession.student_id,
                    StudentSession.topic_id,
                    StudentSession.started_utc,
                    Topic.title,
                    Evaluation.id.label("evaluation_id"),
                    Evaluation.total_score,
                )
                .join(Topic, Topic.id == StudentSession.topic_id)
                .outerjoin(Evaluation, Evaluation.session_id == StudentSession.id)
                .where(StudentSession.student_id.in_(ids))
                .order_by(StudentSession.started_utc.desc(), StudentSession.id)
                .offset((page - 1) * page_size)
                .limit(page_size)
            )
            items = [
                SessionListItem(
                    id=r.id,
                    student_id=r.student_id,
                    topic_id=r.topic_id,
                    topic_title=r.title,
                    started_utc=r.started_utc,
                    evaluated=r.evaluation_id is not None,
                    total_score=r.total_score,
                )
                for r in rows
            ]
        return Page(items=items, total=total or 0, page=page, page_size=page_size)

    async def class_student_ids(self, class_id: UUID) -> List[str]:
        async with self.session_factory() as db:
            return list((await db.scalars(
                select(ClassMember.user_id).where(ClassMember.class_id == class_id).order_by(ClassMember.user_id)
            )).all())

    async def list_sessions_for_class(self, class_id: UUID, page: int = 1,
                                      page_size: int = DEFAULT_PAGE_SIZE) -> Page:
        return await self.list_sessions_for_students(await self.class_student_ids(class_id), page, page_size)

    async def teacher_overview(self, teacher_id: str) -> TeacherOverview:
        """Dashboard counts over the teacher's classes and their members"""
        since = datetime.now(timezone.utc) - ACTIVITY_WINDOW
        async with self.session_factory() as db:
            class_ids = (await db.scalars(
                select(SchoolClass.id).where(SchoolClass.owner_teacher_id == teacher_id)
            )).all()
            student_ids = (await db.scalars(
                select(ClassMember.user_id).where(ClassMember.class_id.in_(class_ids)).distinct()
            )).all() if class_ids else []

            total_topics = await db.scalar(
                select(func.count()).select_from(Topic).where(Topic.teacher_id == teacher_id)
            )
            total_sessions = completed = active = 0
            if student_ids:
                total_sessions = await db.scalar(
                    select(func.count()).select_from(StudentSession)
                    .where(StudentSession.student_id.in_(student_ids))
                )
                completed = await db.scalar(
                    select(func.count(distinct(StudentSession.id)))
                    .select_from(StudentSession)
                    .join(Evaluation, Evaluation.session_id == StudentSession.id)
                    .where(StudentSession.student_id.in_(student_ids), StudentSession.started_utc >= since)
                )
                active = await db.scalar(
                    select(func.count(distinct(StudentSession.student_id)))
                    .where(StudentSession.student_id.in_(student_ids), StudentSession.started_utc >= since)
                )

        return TeacherOverview(
            total_classes=len(class_ids),
            total_students=len(student_ids),
            total_sessions=total_sessions or 0,
            total_topics=total_topics or 0,
            completed_sessions_last_7_days=completed or 0,
            active_students_last_7_days=active or 0,
        )


# Singleton instance
_session_service: Optional[SessionService] = None


def get_session_service() -> SessionService:
    """Get singleton session service"""
    global _session_service
    if _session_service is None:
        _session_service = SessionService()
    return _session_service
