"""
Error taxonomy shared by the provider clients and the stage runner.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Mapping


class ErrorCode(str, Enum):
    VALIDATION_ERROR = "VALIDATION_ERROR"
    RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"
    AI_SERVICE_ERROR = "AI_SERVICE_ERROR"
    STORAGE_ERROR = "STORAGE_ERROR"
    INSUFFICIENT_CREDITS = "INSUFFICIENT_CREDITS"
    CANCELLED = "CANCELLED"
    PROJECT_BUSY = "PROJECT_BUSY"
    NOT_FOUND = "NOT_FOUND"


class BookStudioError(Exception):
    """
    Base class for every expected failure raised inside the pipeline.

    Attributes
    ----------
    code:
        Machine-readable :class:`ErrorCode` used to tag stage outcomes.
    details:
        Optional structured context (stage name, limits, raw status codes).
    """

    code: ErrorCode = ErrorCode.AI_SERVICE_ERROR
    retryable: bool = False

    def __init__(self, message: str, *, details: Mapping[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details: dict[str, Any] = dict(details or {})


class ValidationError(BookStudioError):
    code = ErrorCode.VALIDATION_ERROR


class BudgetExceededError(ValidationError):
    """Prompt or run-level token requirement is above the allowed budget."""


class RateLimitError(BookStudioError):
    code = ErrorCode.RATE_LIMIT_EXCEEDED
    retryable = True


class AIServiceError(BookStudioError):
    code = ErrorCode.AI_SERVICE_ERROR


class OutputLimitExceededError(AIServiceError):
    """Provider reported an output at or past the stage's max output tokens."""

    retryable = True


class StorageError(BookStudioError):
    code = ErrorCode.STORAGE_ERROR


class InsufficientCreditsError(BookStudioError):
    code = ErrorCode.INSUFFICIENT_CREDITS


class CancelledError(BookStudioError):
    code = ErrorCode.CANCELLED


class ProjectBusyError(BookStudioError):
    code = ErrorCode.PROJECT_BUSY


class NotFoundError(BookStudioError):
    code = ErrorCode.NOT_FOUND
