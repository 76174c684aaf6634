"""
Teacher routes: topic authoring, student session review and dashboard
"""
from typing import Any, Dict
from uuid import UUID

from fastapi import APIRouter, Depends, Query

from rag_grader.core.evaluation import EvaluationService, get_evaluation_service
from rag_grader.core.generation import TopicService, get_topic_service
from rag_grader.core.logging import get_logger
from rag_grader.core.sessions import SessionService, get_session_service
from rag_grader.routes.dependencies import (
    get_caller_id,
    require_class_owner,
    require_teacher_over_session,
    require_teacher_over_student,
)
from rag_grader.schemas import ConspectRequest, CreateTopicRequest, Page, SessionDetail, TeacherOverview, TopicOut

logger = get_logger(__name__)

router = APIRouter(prefix="/rag/teacher", tags=["teacher"])


@router.post("/topics", response_model=TopicOut)
async def create_topic(
    request: CreateTopicRequest,
    caller_id: str = Depends(get_caller_id),
    topics: TopicService = Depends(get_topic_service),
):
    """Create a topic and generate four reference answers per question"""
    logger.info("Topic creation requested", teacher_id=caller_id, question_count=len(request.questions))
    return await topics.create_topic(
        title=request.title,
        questions=request.questions,
        conspect=request.conspect,
        language=request.lang,
        teacher_id=caller_id,
        generate_conspect=request.generate_conspect,
    )


@router.get("/topics/{topic_id}", response_model=TopicOut)
async def get_topic(
    topic_id: UUID,
    caller_id: str = Depends(get_caller_id),
    topics: TopicService = Depends(get_topic_service),
):
    return await topics.get_topic(topic_id)


@router.post("/topics/{topic_id}/conspect", response_model=TopicOut)
async def generate_conspect(
    topic_id: UUID,
    request: ConspectRequest,
    caller_id: str = Depends(get_caller_id),
    topics: TopicService = Depends(get_topic_service),
):
    return await topics.generate_conspectus(topic_id, request.lang)


@router.get("/students/{student_id}/sessions", response_model=Page)
async def student_sessions(
    student_id: str,
    page: int = Query(1),
    page_size: int = Query(20),
    caller_id: str = Depends(require_teacher_over_student),
    sessions: SessionService = Depends(get_session_service),
):
    return await sessions.list_sessions_for_student(student_id, page, page_size)


@router.get("/classes/{class_id}/sessions", response_model=Page)
async def class_sessions(
    class_id: UUID,
    page: int = Query(1),
    page_size: int = Query(20),
    caller_id: str = Depends(require_class_owner),
    sessions: SessionService = Depends(get_session_service),
):
    return await sessions.list_sessions_for_class(class_id, page, page_size)


@router.get("/sessions/{session_id}", response_model=SessionDetail)
async def get_session(
    session_id: UUID,
    caller_id: str = Depends(require_teacher_over_session),
    sessions: SessionService = Depends(get_session_service),
):
    return await sessions.get_session(session_id)


@router.get("/sessions/{session_id}/report")
async def get_report(
    session_id: UUID,
    caller_id: str = Depends(require_teacher_over_session),
    evaluations: EvaluationService = Depends(get_evaluation_service),
) -> Dict[str, Any]:
    return await evaluations.get_report_by_session(session_id)


@router.post("/sessions/{session_id}/evaluate")
async def evaluate_session(
    session_id: UUID,
    caller_id: str = Depends(require_teacher_over_session),
    evaluations: EvaluationService = Depends(get_evaluation_service),
):
    evaluation_id = await evaluations.evaluate(session_id)
    return {"evaluation_id": str(evaluation_id)}


@router.get("/dashboard/overview", response_model=TeacherOverview)
async def overview(
    caller_id: str = Depends(get_caller_id),
    sessions: SessionService = Depends(get_session_service),
):
    return await sessions.teacher_overview(caller_id)
