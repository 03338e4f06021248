"""
Token and credit budget guard for remote AI calls.

Every check in this module is deterministic and side-effect free, with the
exception of :class:`TokenCeiling`, which accumulates tokens requested during a
single pipeline run.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable, Mapping, Sequence

from .errors import BudgetExceededError
from .stages import AIStage

logger = logging.getLogger(__name__)

CHARS_PER_TOKEN = 4

# Pricing used for UI-facing cost estimates only.
INPUT_COST_PER_TOKEN_USD = 0.000003
OUTPUT_COST_PER_TOKEN_USD = 0.000015


@dataclass(frozen=True)
class StageBudget:
    max_output_tokens: int
    max_prompt_tokens: int
    credit_cost: int


AI_TOKEN_BUDGETS: Mapping[AIStage, StageBudget] = {
    AIStage.OUTLINE: StageBudget(max_output_tokens=1200, max_prompt_tokens=3000, credit_cost=1),
    AIStage.CHAPTERS: StageBudget(max_output_tokens=2500, max_prompt_tokens=4000, credit_cost=3),
    AIStage.HUMANIZE: StageBudget(max_output_tokens=2500, max_prompt_tokens=5000, credit_cost=2),
    AIStage.ILLUSTRATIONS: StageBudget(max_output_tokens=0, max_prompt_tokens=1000, credit_cost=8),
    AIStage.COVER: StageBudget(max_output_tokens=0, max_prompt_tokens=1000, credit_cost=5),
    # Repair reuses the original stage's charge.
    AIStage.JSON_REPAIR: StageBudget(max_output_tokens=2000, max_prompt_tokens=4000, credit_cost=0),
}


@dataclass(frozen=True)
class GlobalLimits:
    total_book_max_tokens: int = 200_000
    max_chapters_per_run: int = 2
    max_illustrations_per_run: int = 4
    max_retries_per_stage: int = 1


@dataclass(frozen=True)
class ImageLimits:
    illustrations: int = 4
    cover: int = 2


GLOBAL_LIMITS = GlobalLimits()
IMAGE_LIMITS = ImageLimits()


@dataclass(frozen=True)
class BudgetCheck:
    """Result of :func:`is_within_budget`."""

    allowed: bool
    estimated_tokens: int
    limit: int | None = None
    error: str | None = None


def get_stage_budget(stage: AIStage | str) -> StageBudget | None:
    try:
        return AI_TOKEN_BUDGETS[AIStage(stage)]
    except ValueError:
        return None


def estimate_tokens(text: str | None) -> int:
    """
    Estimate tokens as ``ceil(len(text) / 4)``.
    """
    if not text:
        return 0
    return (len(text) + CHARS_PER_TOKEN - 1) // CHARS_PER_TOKEN


def estimate_total_tokens(texts: Iterable[str]) -> int:
    return sum(estimate_tokens(text) for text in texts)


def is_within_budget(stage: AIStage | str, prompt: str) -> BudgetCheck:
    """
    Validate ``prompt`` against the stage's ``max_prompt_tokens``.

    Stages without a budget entry are always allowed.
    """
    estimated = estimate_tokens(prompt)
    budget = get_stage_budget(stage)
    if budget is None:
        return BudgetCheck(allowed=True, estimated_tokens=estimated)

    stage_name = AIStage(stage).value
    if estimated > budget.max_prompt_tokens:
        return BudgetCheck(
            allowed=False,
            estimated_tokens=estimated,
            limit=budget.max_prompt_tokens,
            error=(
                f"Prompt is too large ({estimated} tokens). "
                f"Maximum allowed for {stage_name} is {budget.max_prompt_tokens}."
            ),
        )
    return BudgetCheck(allowed=True, estimated_tokens=estimated, limit=budget.max_prompt_tokens)


def require_within_budget(stage: AIStage | str, prompt: str) -> BudgetCheck:
    """Like :func:`is_within_budget` but raises :class:`BudgetExceededError`."""
    check = is_within_budget(stage, prompt)
    if not check.allowed:
        raise BudgetExceededError(
            check.error or "Prompt exceeds the stage budget.",
            details={
                "stage": AIStage(stage).value,
                "estimated_tokens": check.estimated_tokens,
                "limit": check.limit,
            },
        )
    return check


def call_token_requirement(stage: AIStage | str, prompt: str) -> int:
    """Worst-case tokens a single call may consume: prompt estimate plus max output."""
    budget = get_stage_budget(stage)
    max_output = budget.max_output_tokens if budget else 0
    return estimate_tokens(prompt) + max_output


# ------------------------------------------------------------------ clamping


def clamp_text_length(text: str, max_chars: int) -> str:
    """
    Clamp ``text`` to ``max_chars`` characters, preferring a word boundary.
    """
    if not text or len(text) <= max_chars:
        return text
    if max_chars <= 0:
        return ""

    truncated = text[:max_chars]
    last_space = truncated.rfind(" ")
    if last_space > max_chars * 0.8:
        return truncated[:last_space] + "..."
    return truncated + "..."


def clamp_texts_proportionally(texts: Sequence[str], max_total_chars: int) -> list[str]:
    """
    Shrink every text by the same ratio so their combined length fits.
    """
    total_length = sum(len(text) for text in texts)
    if total_length <= max_total_chars:
        return list(texts)

    ratio = max(max_total_chars, 0) / total_length
    return [clamp_text_length(text, int(len(text) * ratio)) for text in texts]


# ------------------------------------------------------------------ planning


def plan_chapter_batches(total_chapters: int, max_per_run: int | None = None) -> list[list[int]]:
    """Group zero-based chapter indices into batches of ``max_per_run``."""
    per_run = max_per_run or GLOBAL_LIMITS.max_chapters_per_run
    if per_run < 1:
        raise ValueError("max_per_run must be at least 1.")
    return [
        list(range(start, min(start + per_run, total_chapters)))
        for start in range(0, total_chapters, per_run)
    ]


def estimate_run_credits(
    *,
    chapter_count: int,
    variants_per_illustration: int,
    cover_variants: int,
    cover_count: int = 1,
) -> int:
    """
    Credits consumed by a full successful run in which every call succeeds once.

    One outline call, one chapter and one humanize call per chapter, one image
    call per illustration variant and per variant of each of ``cover_count``
    covers. Repairs are free.
    """
    variants = min(max(variants_per_illustration, 0), IMAGE_LIMITS.illustrations)
    covers = min(max(cover_variants, 0), IMAGE_LIMITS.cover)
    return (
        AI_TOKEN_BUDGETS[AIStage.OUTLINE].credit_cost
        + chapter_count * AI_TOKEN_BUDGETS[AIStage.CHAPTERS].credit_cost
        + chapter_count * AI_TOKEN_BUDGETS[AIStage.HUMANIZE].credit_cost
        + chapter_count * variants * AI_TOKEN_BUDGETS[AIStage.ILLUSTRATIONS].credit_cost
        + cover_count * covers * AI_TOKEN_BUDGETS[AIStage.COVER].credit_cost
    )


@dataclass(frozen=True)
class CostEstimate:
    input_tokens: int
    output_tokens: int
    estimated_cost_usd: float


def estimate_cost(input_tokens: int, output_tokens: int) -> CostEstimate:
    return CostEstimate(
        input_tokens=input_tokens,
        output_tokens=output_tokens,
        estimated_cost_usd=(
            input_tokens * INPUT_COST_PER_TOKEN_USD + output_tokens * OUTPUT_COST_PER_TOKEN_USD
        ),
    )


class TokenCeiling:
    """
    Tracks tokens requested during one pipeline run against the global cap.
    """

    def __init__(self, limit: int = GLOBAL_LIMITS.total_book_max_tokens) -> None:
        if limit <= 0:
            raise ValueError("Token ceiling must be positive.")
        self._limit = limit
        self._requested = 0

    @property
    def limit(self) -> int:
        return self._limit

    @property
    def requested(self) -> int:
        return self._requested

    @property
    def remaining(self) -> int:
        return max(self._limit - self._requested, 0)

    def ensure_room(self, tokens: int, *, stage: AIStage | str) -> None:
        """Refuse work whose projected requirement would exceed the ceiling."""
        if self._requested + tokens > self._limit:
            stage_name = AIStage(stage).value
            raise BudgetExceededError(
                f"Stage {stage_name} needs up to {tokens} tokens but only "
                f"{self.remaining} of the {self._limit} token run ceiling remain.",
                details={
                    "stage": stage_name,
                    "projected_tokens": tokens,
                    "remaining_tokens": self.remaining,
                    "limit": self._limit,
                },
            )

    def charge(self, tokens: int, *, stage: AIStage | str) -> None:
        self.ensure_room(tokens, stage=stage)
        self._requested += tokens
        logger.debug(
            "Token ceiling: %s tokens requested for %s (%s/%s).",
            tokens,
            AIStage(stage).value,
            self._requested,
            self._limit,
        )
