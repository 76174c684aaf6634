"""
Caller-owned retry policy for provider calls
"""
from typing import Optional
from tenacity import (
    AsyncRetrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
    wait_random_exponential,
    before_sleep_log,
)
import structlog

import logging as py_logging
from rag_grader.core.exceptions import ProviderError
from rag_grader.config import settings

logger = structlog.get_logger(__name__)
py_logger = py_logging.getLogger(__name__)


def _is_retryable_provider_error(exc: BaseException) -> bool:
    return isinstance(exc, ProviderError) and exc.retryable


def get_provider_retrying(
    max_attempts: Optional[int] = None,
    wait_strategy: str = "exponential",
) -> AsyncRetrying:
    """Build an AsyncRetrying controller for transient provider failures.

    Only ProviderError instances flagged as retryable (transport errors,
    408/429/5xx) are retried; malformed responses and every other exception
    propagate on the first attempt. ``max_attempts`` of 1 disables retrying.
    """
    attempts = max_attempts if max_attempts is not None else settings.llm_max_retries

    if wait_strategy == "random_exponential":
        wait = wait_random_exponential(multiplier=1, max=30)
    else:
        wait = wait_exponential(multiplier=1, min=2, max=30)

    return AsyncRetrying(
        stop=stop_after_attempt(max(1, attempts)),
        wait=wait,
        retry=retry_if_exception(_is_retryable_provider_error),
        before_sleep=before_sleep_log(py_logger, py_logging.WARNING),
        reraise=True,
    )


async def call_with_provider_retry(func, *args, max_attempts: Optional[int] = None, **kwargs):
    """Await ``func(*args, **kwargs)`` under the provider retry policy"""
    retrying = get_provider_retrying(max_attempts=max_attempts)
    result = None
    async for attempt in retrying:
        with attempt:
            number = attempt.retry_state.attempt_number
            if number > 1:
                logger.warning("Retrying provider call",
                               function=getattr(func, "__name__", repr(func)),
                               attempt=number)
            result = await func(*args, **kwargs)
    return result
