"""Closed error taxonomy returned to callers of the try-on pipeline."""
from __future__ import annotations

from typing import Optional


class TryOnError(Exception):
    """Base class; ``message`` is always safe to show to a shopper."""

    code = "TRYON_ERROR"
    default_message = "Something went wrong. Please try again."
    retryable = False

    def __init__(self, message: Optional[str] = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)

    def as_dict(self) -> dict:
        return {"code": self.code, "message": self.message, "retryable": self.retryable}


class InvalidInput(TryOnError):
    code = "INVALID_INPUT"
    default_message = "The request is missing required fields."


class LimitExceeded(TryOnError):
    code = "LIMIT_EXCEEDED"
    default_message = "Try-on limit reached for this store. Please contact the store owner."


class GenerationFailed(TryOnError):
    code = "GENERATION_FAILED"
    default_message = "We could not generate your try-on image. Please try again."
    retryable = True

    def __init__(
        self,
        classification: str,
        request_id: Optional[str] = None,
        message: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.classification = classification
        self.request_id = request_id


class InternalError(TryOnError):
    code = "INTERNAL_ERROR"
    default_message = "An unexpected error occurred. Please try again."
    retryable = True

    def __init__(self, request_id: Optional[str] = None, message: Optional[str] = None) -> None:
        super().__init__(message)
        self.request_id = request_id
