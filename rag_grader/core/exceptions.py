"""
Custom exceptions and error handling for the Retrieval-and-Grading service
"""
from typing import Optional, Dict, Any


class RagServiceError(Exception):
    """Base exception for the Retrieval-and-Grading service"""

    status_code: int = 400

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


# Transport-level failures worth another attempt if the caller chooses to retry
RETRYABLE_STATUS_CODES = frozenset({408, 409, 425, 429, 500, 502, 503, 504})


class ProviderError(RagServiceError):
    """LLM provider call failed: network, HTTP status or malformed response"""

    status_code = 503

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        raw_body: Optional[str] = None,
        malformed: bool = False,
    ):
        super().__init__(message, {
            "provider_status": status_code,
            "malformed": malformed,
        })
        self.provider_status = status_code
        self.raw_body = raw_body
        self.malformed = malformed

    @property
    def retryable(self) -> bool:
        if self.malformed:
            return False
        if self.provider_status is None:
            return True
        return self.provider_status in RETRYABLE_STATUS_CODES


class GenerationError(RagServiceError):
    """Provider returned output that violates the generation contract"""

    status_code = 502


class NotFoundError(RagServiceError):
    """Referenced topic, session or evaluation does not exist"""

    status_code = 404


class ValidationError(RagServiceError):
    """Input validation error"""

    status_code = 400


class ForbiddenError(RagServiceError):
    """Caller is not related to the requested resource"""

    status_code = 403


class ConflictError(RagServiceError):
    """Duplicate creation hit a uniqueness constraint"""

    status_code = 409
