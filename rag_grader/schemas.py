from datetime import datetime
from decimal import Decimal
from typing import List, Optional, Literal
from uuid import UUID
from pydantic import BaseModel, Field, ConfigDict


LevelLabel = Literal["low", "medium", "high"]


# ======================= Topic Schemas =======================

class CreateTopicRequest(BaseModel):
    title: str
    questions: List[str]
    conspect: Optional[str] = None
    generate_conspect: bool = Field(default=False, validation_alias="generateConspect")
    lang: str = Field(default="English")

    model_config = ConfigDict(populate_by_name=True)


class ConspectRequest(BaseModel):
    lang: str = Field(default="English")


class GeneratedAnswerOut(BaseModel):
    id: UUID
    level: LevelLabel
    score: int
    text: str


class QuestionOut(BaseModel):
    id: UUID
    position: int
    text: str
    generated: List[GeneratedAnswerOut] = Field(default_factory=list)


class TopicOut(BaseModel):
    id: UUID
    title: str
    created_utc: datetime
    conspect: Optional[str] = None
    teacher_id: Optional[str] = None
    questions: List[QuestionOut] = Field(default_factory=list)


class TopicSummary(BaseModel):
    id: UUID
    title: str
    created_utc: datetime


class Page(BaseModel):
    items: list
    total: int
    page: int
    page_size: int


# ======================= Session Schemas =======================

class CreateSessionRequest(BaseModel):
    topic_id: UUID = Field(validation_alias="topicId")

    model_config = ConfigDict(populate_by_name=True)


class SubmitItem(BaseModel):
    question_id: UUID = Field(validation_alias="questionId")
    answer: str

    model_config = ConfigDict(populate_by_name=True)


class SubmitAnswersRequest(BaseModel):
    answers: List[SubmitItem]


class ResponseOut(BaseModel):
    question_id: UUID
    answer: str


class EvaluationSummary(BaseModel):
    id: UUID
    total_score: Decimal
    created_utc: datetime


class SessionListItem(BaseModel):
    id: UUID
    student_id: str
    topic_id: UUID
    topic_title: str
    started_utc: datetime
    evaluated: bool
    total_score: Optional[Decimal] = None


class SessionDetail(BaseModel):
    id: UUID
    student_id: str
    started_utc: datetime
    topic: TopicOut
    responses: List[ResponseOut] = Field(default_factory=list)
    evaluation: Optional[EvaluationSummary] = None


# ======================= Evaluation Schemas =======================

class QuestionReport(BaseModel):
    question_id: UUID
    match_level: LevelLabel
    base: int
    adjustment: int = Field(ge=-5, le=5)
    score: int = Field(ge=0, le=100)
    rationale: str = ""
    strengths: List[str] = Field(default_factory=list)
    recommendations: List[str] = Field(default_factory=list)
    advice: str = ""


class EvaluationReport(BaseModel):
    session_id: UUID
    overall_score: float = Field(ge=0.0, le=100.0)
    per_question: List[QuestionReport] = Field(default_factory=list)


class EvaluationOut(BaseModel):
    id: UUID
    session_id: UUID
    total_score: Decimal
    created_utc: datetime
    report: EvaluationReport


# ======================= Retrieval Schemas =======================

class AddDocRequest(BaseModel):
    content: str
    source: Optional[str] = None


class TeacherOverview(BaseModel):
    total_classes: int
    total_students: int
    total_sessions: int
    total_topics: int
    completed_sessions_last_7_days: int
    active_students_last_7_days: int
