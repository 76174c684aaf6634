"""
Structured logging and monitoring for the Retrieval-and-Grading service
"""
import sys
import time
import asyncio
from functools import wraps
from typing import Optional, Callable
from contextvars import ContextVar
import structlog
from structlog.processors import CallsiteParameter, CallsiteParameterAdder
from prometheus_client import Counter, Histogram
import logging

from rag_grader.config import settings

# Context variables for request tracking
request_id_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)
session_id_var: ContextVar[Optional[str]] = ContextVar("session_id", default=None)

# Prometheus metrics
llm_requests = Counter("llm_requests_total", "Total LLM requests", ["model", "operation", "status"])
llm_duration = Histogram("llm_duration_seconds", "LLM request duration", ["model", "operation"])
embedding_requests = Counter("embedding_requests_total", "Total embedding requests", ["model", "status"])
embedding_duration = Histogram("embedding_duration_seconds", "Embedding request duration", ["model"])
topics_created = Counter("topics_created_total", "Topics created with generated reference answers")
evaluations_created = Counter("evaluations_created_total", "Evaluations written", ["outcome"])
questions_graded = Counter("questions_graded_total", "Per-question grading results", ["resolution"])


def add_request_context(logger, method_name, event_dict):
    """Add request context to log events"""
    request_id = request_id_var.get()
    session_id = session_id_var.get()

    if request_id:
        event_dict["request_id"] = request_id
    if session_id:
        event_dict["session_id"] = session_id

    event_dict["service"] = "rag-grader"
    event_dict["environment"] = settings.environment.value

    return event_dict


def setup_logging():
    """Configure structured logging for the application"""

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, settings.log_level.upper())
    )

    processors = [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        add_request_context,
        CallsiteParameterAdder(
            parameters=[CallsiteParameter.FILENAME, CallsiteParameter.LINENO]
        ),
        structlog.processors.UnicodeDecoder(),
    ]

    # Use JSON in production
    if settings.log_format == "json" or settings.is_production:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str = __name__) -> structlog.BoundLogger:
    """Get a configured logger instance"""
    return structlog.get_logger(name)


def log_execution_time(func: Callable) -> Callable:
    """Decorator to log and measure coroutine execution time"""
    logger = get_logger(func.__module__)

    @wraps(func)
    async def async_wrapper(*args, **kwargs):
        start_time = time.time()
        function_name = func.__name__

        logger.info("function_start", function=function_name)

        try:
            result = await func(*args, **kwargs)
        except Exception as e:
            logger.error("function_error",
                         function=function_name,
                         duration_seconds=time.time() - start_time,
                         error=str(e),
                         error_type=type(e).__name__)
            raise

        logger.info("function_success",
                    function=function_name,
                    duration_seconds=time.time() - start_time)
        return result

    if not asyncio.iscoroutinefunction(func):
        raise TypeError("log_execution_time only wraps coroutine functions")
    return async_wrapper


class MetricsLogger:
    """Helper class for logging with metrics"""

    def __init__(self, logger: structlog.BoundLogger):
        self.logger = logger

    def log_llm_request(self, model: str, operation: str, prompt_length: int):
        """Log LLM request"""
        self.logger.info("llm_request",
                         model=model,
                         operation=operation,
                         prompt_length=prompt_length)

    def log_llm_complete(self, model: str, operation: str, duration: float,
                         tokens_used: int = 0, success: bool = True):
        """Log LLM completion"""
        status = "success" if success else "error"
        llm_requests.labels(model=model, operation=operation, status=status).inc()
        llm_duration.labels(model=model, operation=operation).observe(duration)

        if success:
            self.logger.info("llm_complete",
                             model=model,
                             operation=operation,
                             duration_seconds=duration,
                             tokens_used=tokens_used)
        else:
            self.logger.error("llm_failed",
                              model=model,
                              operation=operation,
                              duration_seconds=duration)

    def log_embedding_complete(self, model: str, duration: float, success: bool = True):
        """Log embedding completion"""
        status = "success" if success else "error"
        embedding_requests.labels(model=model, status=status).inc()
        embedding_duration.labels(model=model).observe(duration)

        if success:
            self.logger.info("embedding_complete",
                             model=model,
                             duration_seconds=duration)
        else:
            self.logger.error("embedding_failed",
                              model=model,
                              duration_seconds=duration)

    def log_topic_created(self, topic_id: str, question_count: int, answer_count: int):
        topics_created.inc()
        self.logger.info("topic_created",
                         topic_id=topic_id,
                         question_count=question_count,
                         answer_count=answer_count)

    def log_question_graded(self, question_id: str, resolution: str, final_score: int):
        questions_graded.labels(resolution=resolution).inc()
        self.logger.info("question_graded",
                         question_id=question_id,
                         resolution=resolution,
                         final_score=final_score)

    def log_evaluation(self, session_id: str, outcome: str, total_score: Optional[float] = None):
        """Log evaluation outcome: created, existing or duplicate"""
        evaluations_created.labels(outcome=outcome).inc()
        self.logger.info("evaluation_recorded",
                         session_id=session_id,
                         outcome=outcome,
                         total_score=total_score)


# Initialize logging on module import
setup_logging()

# Create default logger
logger = get_logger(__name__)
metrics_logger = MetricsLogger(logger)
