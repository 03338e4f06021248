"""
Tagged results returned by every stage invocation.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Union

from bookstudio.common.errors import ErrorCode
from bookstudio.common.stages import ProjectStage


@dataclass(frozen=True)
class StageSucceeded:
    """
    The stage produced and persisted its artifact.

    ``complete`` is False when a per-run cap left items for a later invocation;
    the stage pointer only advances once the stage is complete.
    ``issues`` are problems that break image consistency (for example a
    missing chapter-1 reference); ``warnings`` are advisory.
    """

    stage: ProjectStage
    artifact: Any
    credits_charged: int = 0
    warnings: tuple[str, ...] = ()
    complete: bool = True
    remaining: int = 0
    issues: tuple[str, ...] = ()

    @property
    def ok(self) -> bool:
        return True


@dataclass(frozen=True)
class StageNeedsReview:
    """Structured parsing failed after the repair call; raw text was persisted."""

    stage: ProjectStage
    artifact: Any
    raw_text: str
    error: str
    credits_charged: int = 0
    complete: bool = True

    @property
    def ok(self) -> bool:
        return True


@dataclass(frozen=True)
class StageRejected:
    """Refused before any remote call; nothing was charged."""

    stage: ProjectStage
    reason: str
    code: ErrorCode = ErrorCode.VALIDATION_ERROR
    details: dict[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return False


@dataclass(frozen=True)
class StageCancelled:
    stage: ProjectStage
    message: str
    credits_charged: int = 0

    @property
    def ok(self) -> bool:
        return False

    @property
    def code(self) -> ErrorCode:
        return ErrorCode.CANCELLED


@dataclass(frozen=True)
class StageFailed:
    """
    The stage could not finish. ``artifact`` holds generated work that could
    not be persisted, when there is any.
    """

    stage: ProjectStage
    error: str
    code: ErrorCode
    credits_charged: int = 0
    artifact: Any = None
    needs_review: bool = False

    @property
    def ok(self) -> bool:
        return False


StageOutcome = Union[StageSucceeded, StageNeedsReview, StageRejected, StageCancelled, StageFailed]
