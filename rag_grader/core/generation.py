"""
Topic creation with LLM-generated reference answers and optional conspectus
"""
from typing import Any, Dict, List, Optional, Sequence, Tuple
from uuid import UUID

import structlog
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from rag_grader.config import settings
from rag_grader.core.exceptions import GenerationError, NotFoundError, ValidationError
from rag_grader.core.llm import LlmGateway, get_llm_gateway, parse_json_payload
from rag_grader.core.logging import log_execution_time, metrics_logger
from rag_grader.core.prompts import EXPECTED_LEVELS, build_conspectus_prompt, build_generation_prompt
from rag_grader.core.retry import call_with_provider_retry
from rag_grader.db import async_session
from rag_grader.models import AnswerLevel, GeneratedAnswer, Question, Topic
from rag_grader.schemas import GeneratedAnswerOut, Page, QuestionOut, TopicOut, TopicSummary

logger = structlog.get_logger(__name__)

MAX_TITLE_LENGTH = 200
MAX_QUESTION_LENGTH = 4000
MAX_ANSWER_LENGTH = 8000
DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 100

ParsedAnswers = List[Tuple[AnswerLevel, str]]


def validate_topic_input(title: str, questions: Sequence[str]) -> Tuple[str, List[str]]:
    """Return the trimmed title and questions or raise ValidationError"""
    clean_title = (title or "").strip()
    if not clean_title:
        raise ValidationError("Title must not be empty")
    if len(clean_title) > MAX_TITLE_LENGTH:
        raise ValidationError(f"Title exceeds {MAX_TITLE_LENGTH} characters",
                              {"length": len(clean_title)})
    if not questions:
        raise ValidationError("At least one question is required")

    clean_questions: List[str] = []
    for idx, q in enumerate(questions):
        text = (q or "").strip() if isinstance(q, str) else ""
        if not text:
            raise ValidationError("Question must not be empty", {"index": idx})
        if len(text) > MAX_QUESTION_LENGTH:
            raise ValidationError(f"Question exceeds {MAX_QUESTION_LENGTH} characters",
                                  {"index": idx, "length": len(text)})
        clean_questions.append(text)
    return clean_title, clean_questions


def _parse_index(raw: Any, question_count: int) -> int:
    if isinstance(raw, bool):
        raise GenerationError("Generated item index is not an integer", {"index": raw})
    if isinstance(raw, float) and raw.is_integer():
        raw = int(raw)
    elif isinstance(raw, str) and raw.strip().lstrip("-").isdigit():
        raw = int(raw.strip())
    if not isinstance(raw, int):
        raise GenerationError("Generated item index is missing or not an integer", {"index": raw})
    if raw < 0 or raw >= question_count:
        raise GenerationError("Generated item index out of range",
                              {"index": raw, "question_count": question_count})
    return raw


def parse_generation_payload(text: str, question_count: int) -> List[ParsedAnswers]:
    """Strictly map the batch response onto questions by index.

    Returns one list of (level, text) pairs per question, in question order.
    Raises GenerationError for any structural defect; nothing here is retried.
    """
    try:
        payload = parse_json_payload(text)
    except ValueError as e:
        raise GenerationError("Generation response is not valid JSON", {"reason": str(e)}) from e

    items = payload.get("items") if isinstance(payload, dict) else None
    if not isinstance(items, list):
        raise GenerationError("Generation response has no 'items' list")

    by_index: Dict[int, ParsedAnswers] = {}
    for item in items:
        if not isinstance(item, dict):
            raise GenerationError("Generated item is not an object")
        index = _parse_index(item.get("index"), question_count)
        if index in by_index:
            raise GenerationError("Duplicate generated item index", {"index": index})

        answers = item.get("answers")
        if not isinstance(answers, list) or not answers:
            raise GenerationError("Generated item has no answers", {"index": index})

        parsed: ParsedAnswers = []
        for answer in answers:
            if not isinstance(answer, dict):
                continue
            body = answer.get("text")
            body = body.strip() if isinstance(body, str) else ""
            if not body:
                continue
            parsed.append((AnswerLevel.parse(answer.get("level")), body[:MAX_ANSWER_LENGTH]))

        if not parsed:
            raise GenerationError("All generated answers are empty", {"index": index})
        by_index[index] = parsed

    missing = [i for i in range(question_count) if i not in by_index]
    if missing:
        raise GenerationError("Generation response is missing questions", {"missing_indexes": missing})

    return [by_index[i] for i in range(question_count)]


def _log_distribution(index: int, answers: ParsedAnswers):
    levels = sorted(level for level, _ in answers)
    if levels != sorted(EXPECTED_LEVELS):
        logger.warning("Non-standard answer distribution accepted",
                       index=index,
                       levels=[lvl.label for lvl in levels])


def topic_out(topic: Topic) -> TopicOut:
    """Serialize a loaded Topic with questions in position order, answers high to low"""
    questions = []
    for q in sorted(topic.questions, key=lambda x: x.position):
        generated = [
            GeneratedAnswerOut(id=a.id, level=a.answer_level.label, score=int(a.answer_level), text=a.text)
            for a in sorted(q.generated, key=lambda x: x.level, reverse=True)
        ]
        questions.append(QuestionOut(id=q.id, position=q.position, text=q.text, generated=generated))
    return TopicOut(
        id=topic.id,
        title=topic.title,
        created_utc=topic.created_utc,
        conspect=topic.conspect,
        teacher_id=topic.teacher_id,
        questions=questions,
    )


def normalize_paging(page: int, page_size: int) -> Tuple[int, int]:
    page = page if page and page > 0 else 1
    page_size = page_size if page_size and page_size > 0 else DEFAULT_PAGE_SIZE
    return page, min(page_size, MAX_PAGE_SIZE)


class TopicService:
    """Creates topics with calibrated reference answers (GenerationOrchestrator)"""

    def __init__(
        self,
        llm: Optional[LlmGateway] = None,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    ):
        self.llm = llm or get_llm_gateway()
        self.session_factory = session_factory or async_session

    @log_execution_time
    async def create_topic(
        self,
        title: str,
        questions: Sequence[str],
        conspect: Optional[str] = None,
        language: Optional[str] = None,
        teacher_id: Optional[str] = None,
        generate_conspect: bool = False,
    ) -> TopicOut:
        clean_title, clean_questions = validate_topic_input(title, questions)
        language = (language or "").strip() or settings.default_language

        logger.info("Generating reference answers",
                    title=clean_title,
                    question_count=len(clean_questions),
                    language=language,
                    generate_conspect=generate_conspect)

        prompt = build_generation_prompt(clean_title, clean_questions, language)
        raw = await call_with_provider_retry(self.llm.complete, prompt, expect_json=True)
        generated = parse_generation_payload(raw, len(clean_questions))
        for idx, answers in enumerate(generated):
            _log_distribution(idx, answers)

        if generate_conspect:
            conspect_prompt = build_conspectus_prompt(clean_title, clean_questions, language)
            conspect = (await call_with_provider_retry(self.llm.complete, conspect_prompt)).strip() or None
        elif conspect is not None:
            conspect = conspect.strip() or None

        topic = Topic(title=clean_title, conspect=conspect, teacher_id=teacher_id)
        topic.questions = [
            Question(
                position=idx,
                text=text,
                generated=[GeneratedAnswer(level=int(level), text=body) for level, body in generated[idx]],
            )
            for idx, text in enumerate(clean_questions)
        ]

        async with self.session_factory() as session:
            session.add(topic)
            await session.commit()

        metrics_logger.log_topic_created(
            str(topic.id),
            question_count=len(clean_questions),
            answer_count=sum(len(a) for a in generated),
        )
        return topic_out(topic)

    @log_execution_time
    async def generate_conspectus(self, topic_id: UUID, language: Optional[str] = None) -> TopicOut:
        """Generate and store a conspectus for an existing topic"""
        language = (language or "").strip() or settings.default_language
        async with self.session_factory() as session:
            topic = await session.get(Topic, topic_id)
            if topic is None:
                raise NotFoundError("Topic not found", {"topic_id": str(topic_id)})
            title = topic.title
            question_texts = [q.text for q in sorted(topic.questions, key=lambda x: x.position)]

        prompt = build_conspectus_prompt(title, question_texts, language)
        text = (await call_with_provider_retry(self.llm.complete, prompt)).strip() or None

        async with self.session_factory() as session:
            topic = await session.get(Topic, topic_id)
            if topic is None:
                raise NotFoundError("Topic not found", {"topic_id": str(topic_id)})
            topic.conspect = text
            await session.commit()
            logger.info("Conspectus stored", topic_id=str(topic_id), length=len(text or ""))
            return topic_out(topic)

    async def get_topic(self, topic_id: UUID) -> TopicOut:
        async with self.session_factory() as session:
            topic = await session.get(Topic, topic_id)
            if topic is None:
                raise NotFoundError("Topic not found", {"topic_id": str(topic_id)})
            return topic_out(topic)

    async def list_topics(self, page: int = 1, page_size: int = DEFAULT_PAGE_SIZE) -> Page:
        """Newest topics first"""
        page, page_size = normalize_paging(page, page_size)
        async with self.session_factory() as session:
            total = await session.scalar(select(func.count()).select_from(Topic))
            rows = await session.execute(
                select(Topic.id, Topic.title, Topic.created_utc)
                .order_by(Topic.created_utc.desc(), Topic.id)
                .offset((page - 1) * page_size)
                .limit(page_size)
            )
            items = [TopicSummary(id=r.id, title=r.title, created_utc=r.created_utc) for r in rows]
        return Page(items=items, total=total or 0, page=page, page_size=page_size)


# Singleton instance
_topic_service: Optional[TopicService] = None


def get_topic_service() -> TopicService:
    """Get singleton topic service"""
    global _topic_service
    if _topic_service is None:
        _topic_service = TopicService()
    return _topic_service
