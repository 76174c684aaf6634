"""
Session grading: per-question LLM evaluation reconciled into integer scores
"""
import asyncio
from dataclasses import dataclass, field
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, List, Optional, Sequence, Tuple
from uuid import UUID

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from rag_grader.config import settings
from rag_grader.core.exceptions import ConflictError, NotFoundError, ProviderError
from rag_grader.core.llm import LlmGateway, get_llm_gateway, parse_json_payload
from rag_grader.core.logging import log_execution_time, metrics_logger, session_id_var
from rag_grader.core.prompts import build_evaluation_prompt
from rag_grader.core.retry import call_with_provider_retry
from rag_grader.db import async_session
from rag_grader.models import AnswerLevel, Evaluation, StudentResponse, StudentSession, Topic
from rag_grader.schemas import EvaluationOut, EvaluationReport, QuestionReport
from rag_grader.utils.language import choose_feedback_language

logger = structlog.get_logger(__name__)

ANCHORS: Tuple[int, ...] = (int(AnswerLevel.LOW), int(AnswerLevel.MEDIUM), int(AnswerLevel.HIGH))
ANCHOR_TOLERANCE = 2
MAX_ADJUSTMENT = 5
DEFAULT_RAW_SCORE = 60
_CENTS = Decimal("0.01")


def clamp(value: int, low: int, high: int) -> int:
    return max(low, min(high, value))


def _as_number(value: Any) -> Optional[int]:
    """JSON numbers only; floats are rounded"""
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(round(value))
    return None


def _as_raw_score(value: Any) -> int:
    number = _as_number(value)
    if number is not None:
        return number
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError:
            return 0
    return 0


@dataclass
class ScoreResolution:
    base: int
    adjustment: int
    final: int
    source: str  # match_level, base or score

    @property
    def level(self) -> AnswerLevel:
        return AnswerLevel(self.base)


def reconcile_score(payload: Dict[str, Any]) -> ScoreResolution:
    """Turn an untrusted grading payload into base, adjustment and final score.

    ``match_level`` sets the base; a numeric ``base`` within two points of an
    anchor overrides it. When neither resolves, the raw ``score`` (60 if
    missing or zero) picks the closest anchor and the difference becomes the
    adjustment. Adjustment is always within [-5, 5], final within [0, 100].
    """
    base = 0
    source = "score"
    adjustment = 0

    level = payload.get("match_level")
    if isinstance(level, str):
        key = level.strip().upper()
        if key in AnswerLevel.__members__:
            base = int(AnswerLevel[key])
            source = "match_level"

    model_base = _as_number(payload.get("base"))
    if model_base is not None:
        for anchor in ANCHORS:
            if abs(model_base - anchor) <= ANCHOR_TOLERANCE:
                base = anchor
                source = "base"
                break

    model_adjustment = _as_number(payload.get("adjustment"))
    if model_adjustment is not None:
        adjustment = clamp(model_adjustment, -MAX_ADJUSTMENT, MAX_ADJUSTMENT)

    if base == 0:
        raw = _as_raw_score(payload.get("score")) or DEFAULT_RAW_SCORE
        base = min(ANCHORS, key=lambda anchor: abs(raw - anchor))
        adjustment = clamp(raw - base, -MAX_ADJUSTMENT, MAX_ADJUSTMENT)
        source = "score"

    return ScoreResolution(base=base, adjustment=adjustment,
                           final=clamp(base + adjustment, 0, 100), source=source)


def _string_list(value: Any) -> List[str]:
    if not isinstance(value, list):
        return []
    return [item.strip() for item in value if isinstance(item, str) and item.strip()]


def _string(value: Any) -> str:
    return value.strip() if isinstance(value, str) else ""


def build_question_report(question_id: UUID, payload: Dict[str, Any],
                          resolved: Optional[ScoreResolution] = None) -> QuestionReport:
    resolved = resolved or reconcile_score(payload)
    return QuestionReport(
        question_id=question_id,
        match_level=resolved.level.label,
        base=resolved.base,
        adjustment=resolved.adjustment,
        score=resolved.final,
        rationale=_string(payload.get("rationale")),
        strengths=_string_list(payload.get("strengths")),
        recommendations=_string_list(payload.get("recommendations")),
        advice=_string(payload.get("advice")),
    )


def total_score(finals: Sequence[int]) -> Decimal:
    """Mean of final scores, two decimals, ties away from zero; 0 when empty"""
    if not finals:
        return Decimal("0.00")
    mean = Decimal(sum(finals)) / Decimal(len(finals))
    return mean.quantize(_CENTS, rounding=ROUND_HALF_UP)


@dataclass
class _GradingItem:
    question_id: UUID
    question: str
    answer: str
    references: List[Tuple[AnswerLevel, str]] = field(default_factory=list)


class EvaluationService:
    """Grades a session once and stores the write-once Evaluation (EvaluationEngine)"""

    def __init__(
        self,
        llm: Optional[LlmGateway] = None,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        concurrency: Optional[int] = None,
    ):
        self.llm = llm or get_llm_gateway()
        self.session_factory = session_factory or async_session
        self.concurrency = concurrency or settings.evaluation_concurrency

    @log_execution_time
    async def evaluate(self, session_id: UUID) -> UUID:
        """Return the session's evaluation id, grading the session first if needed"""
        token = session_id_var.set(str(session_id))
        try:
            existing = await self._existing_evaluation_id(session_id)
            if existing is not None:
                metrics_logger.log_evaluation(str(session_id), "existing")
                return existing

            items = await self._load_grading_items(session_id)
            reports = await self._grade_all(items)
            total = total_score([r.score for r in reports])
            report = EvaluationReport(session_id=session_id, overall_score=float(total), per_question=reports)

            try:
                evaluation_id = await self._persist(session_id, total, report)
            except ConflictError:
                winner = await self._existing_evaluation_id(session_id)
                if winner is None:
                    raise
                metrics_logger.log_evaluation(str(session_id), "duplicate")
                return winner

            metrics_logger.log_evaluation(str(session_id), "created", float(total))
            return evaluation_id
        finally:
            session_id_var.reset(token)

    async def _existing_evaluation_id(self, session_id: UUID) -> Optional[UUID]:
        async with self.session_factory() as session:
            return await session.scalar(select(Evaluation.id).where(Evaluation.session_id == session_id))

    async def _load_grading_items(self, session_id: UUID) -> List[_GradingItem]:
        async with self.session_factory() as session:
            student_session = await session.get(StudentSession, session_id)
            if student_session is None:
                raise NotFoundError("Session not found", {"session_id": str(session_id)})
            topic = await session.get(Topic, student_session.topic_id)
            if topic is None:
                raise NotFoundError("Topic not found", {"topic_id": str(student_session.topic_id)})

            rows = await session.execute(
                select(StudentResponse.question_id, StudentResponse.answer)
                .where(StudentResponse.session_id == session_id)
            )
            answers = {row.question_id: row.answer for row in rows}

            items: List[_GradingItem] = []
            for question in sorted(topic.questions, key=lambda q: q.position):
                if question.id not in answers:
                    continue
                references = [
                    (a.answer_level, a.text)
                    for a in sorted(question.generated, key=lambda x: x.level, reverse=True)
                    if a.text and a.text.strip()
                ]
                if not references:
                    logger.warning("Skipping question without reference answers",
                                   question_id=str(question.id))
                    continue
                items.append(_GradingItem(question.id, question.text, answers[question.id], references))
            return items

    async def _grade_all(self, items: List[_GradingItem]) -> List[QuestionReport]:
        """
        Grade every item concurrently and drop the ones the provider failed on.

        A malformed provider response (no usable choices) is fatal, as is a batch
        where every call failed. Both are raised only after all calls have settled.
        """
        semaphore = asyncio.Semaphore(self.concurrency)

        async def grade(item: _GradingItem) -> QuestionReport:
            async with semaphore:
                return await self._grade_one(item)

        # gather keeps input order, so reports follow topic order
        outcomes = await asyncio.gather(*(grade(item) for item in items), return_exceptions=True)

        reports: List[QuestionReport] = []
        failures: List[ProviderError] = []
        for item, outcome in zip(items, outcomes):
            if isinstance(outcome, ProviderError):
                if outcome.malformed:
                    raise outcome
                logger.warning("Skipping question after provider error",
                               question_id=str(item.question_id),
                               provider_status=outcome.provider_status,
                               error=outcome.message)
                failures.append(outcome)
            elif isinstance(outcome, BaseException):
                raise outcome
            else:
                reports.append(outcome)

        if failures and not reports:
            raise failures[0]
        return reports

    async def _grade_one(self, item: _GradingItem) -> QuestionReport:
        language = choose_feedback_language(item.answer, item.question, settings.default_language)
        prompt = build_evaluation_prompt(item.question, item.answer, item.references, language)
        raw = await call_with_provider_retry(self.llm.complete, prompt, expect_json=True)

        try:
            payload = parse_json_payload(raw)
        except ValueError as e:
            logger.warning("Unparseable grading output, using fallback score",
                           question_id=str(item.question_id), error=str(e))
            payload = {}
        if not isinstance(payload, dict):
            payload = {}

        resolved = reconcile_score(payload)
        report = build_question_report(item.question_id, payload, resolved)
        metrics_logger.log_question_graded(str(item.question_id),
                                           resolved.source,
                                           report.score)
        return report

    async def _persist(self, session_id: UUID, total: Decimal, report: EvaluationReport) -> UUID:
        async with self.session_factory() as session:
            evaluation = Evaluation(
                session_id=session_id,
                total_score=total,
                report_json=report.model_dump(mode="json"),
            )
            session.add(evaluation)
            try:
                await session.commit()
            except IntegrityError as e:
                await session.rollback()
                raise ConflictError("Evaluation already exists for session",
                                    {"session_id": str(session_id)}) from e
            return evaluation.id

    async def get_report_by_session(self, session_id: UUID) -> Dict[str, Any]:
        async with self.session_factory() as session:
            report = await session.scalar(
                select(Evaluation.report_json).where(Evaluation.session_id == session_id)
            )
        if report is None:
            raise NotFoundError("Evaluation not found for session", {"session_id": str(session_id)})
        return report

    async def get_evaluation(self, evaluation_id: UUID) -> EvaluationOut:
        async with self.session_factory() as session:
            evaluation = await session.get(Evaluation, evaluation_id)
        if evaluation is None:
            raise NotFoundError("Evaluation not found", {"evaluation_id": str(evaluation_id)})
        return EvaluationOut(
            id=evaluation.id,
            session_id=evaluation.session_id,
            total_score=evaluation.total_score,
            created_utc=evaluation.created_utc,
            report=EvaluationReport.model_validate(evaluation.report_json),
        )


# Singleton instance
_evaluation_service: Optional[EvaluationService] = None


def get_evaluation_service() -> EvaluationService:
    """Get singleton evaluation service"""
    global _evaluation_service
    if _evaluation_service is None:
        _evaluation_service = EvaluationService()
    return _evaluation_service
