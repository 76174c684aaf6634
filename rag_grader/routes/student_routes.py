"""
Student routes: browse topics, answer questions and read evaluations
"""
from typing import Any, Dict, List
from uuid import UUID

from fastapi import APIRouter, Depends, Query

from rag_grader.core.evaluation import EvaluationService, get_evaluation_service
from rag_grader.core.generation import TopicService, get_topic_service
from rag_grader.core.logging import get_logger
from rag_grader.core.sessions import SessionService, get_session_service
from rag_grader.routes.dependencies import get_caller_id, require_session_owner
from rag_grader.schemas import (
    CreateSessionRequest, Page, ResponseOut, SessionDetail, SubmitAnswersRequest, TopicOut
)

logger = get_logger(__name__)

router = APIRouter(prefix="/rag/student", tags=["student"])


@router.get("/topics", response_model=Page)
async def list_topics(
    page: int = Query(1),
    page_size: int = Query(20),
    caller_id: str = Depends(get_caller_id),
    topics: TopicService = Depends(get_topic_service),
):
    return await topics.list_topics(page, page_size)


@router.get("/topics/{topic_id}", response_model=TopicOut)
async def get_topic(
    topic_id: UUID,
    caller_id: str = Depends(get_caller_id),
    topics: TopicService = Depends(get_topic_service),
):
    return await topics.get_topic(topic_id)


@router.post("/sessions")
async def create_session(
    request: CreateSessionRequest,
    caller_id: str = Depends(get_caller_id),
    sessions: SessionService = Depends(get_session_service),
):
    """Start (or resume) the caller's session on a topic"""
    session_id = await sessions.create_session(request.topic_id, caller_id)
    return {"session_id": str(session_id)}


@router.get("/sessions", response_model=Page)
async def my_sessions(
    page: int = Query(1),
    page_size: int = Query(20),
    caller_id: str = Depends(get_caller_id),
    sessions: SessionService = Depends(get_session_service),
):
    return await sessions.list_sessions_for_student(caller_id, page, page_size)


@router.get("/sessions/{session_id}", response_model=SessionDetail)
async def get_session(
    session_id: UUID,
    caller_id: str = Depends(require_session_owner),
    sessions: SessionService = Depends(get_session_service),
):
    return await sessions.get_session(session_id)


@router.post("/sessions/{session_id}/submit", response_model=List[ResponseOut])
async def submit_answers(
    session_id: UUID,
    request: SubmitAnswersRequest,
    caller_id: str = Depends(require_session_owner),
    sessions: SessionService = Depends(get_session_service),
):
    return await sessions.submit_answers(session_id, [(a.question_id, a.answer) for a in request.answers])


@router.post("/sessions/{session_id}/evaluate")
async def evaluate_session(
    session_id: UUID,
    caller_id: str = Depends(require_session_owner),
    evaluations: EvaluationService = Depends(get_evaluation_service),
):
    evaluation_id = await evaluations.evaluate(session_id)
    return {"evaluation_id": str(evaluation_id)}


@router.get("/sessions/{session_id}/report")
async def get_report(
    session_id: UUID,
    caller_id: str = Depends(require_session_owner),
    evaluations: EvaluationService = Depends(get_evaluation_service),
) -> Dict[str, Any]:
    return await evaluations.get_report_by_session(session_id)
