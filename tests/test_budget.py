from __future__ import annotations

import math

import pytest

from bookstudio.common import (
    AI_TOKEN_BUDGETS,
    GLOBAL_LIMITS,
    IMAGE_LIMITS,
    AIStage,
    BudgetExceededError,
    TokenCeiling,
    clamp_text_length,
    clamp_texts_proportionally,
    estimate_cost,
    estimate_run_credits,
    estimate_tokens,
    is_within_budget,
    plan_chapter_batches,
)
from bookstudio.common.budget import call_token_requirement, require_within_budget


@pytest.mark.parametrize("length", [0, 1, 3, 4, 5, 399, 400, 12001])
def test_estimate_tokens_is_ceiling_of_quarter_length(length):
    assert estimate_tokens("x" * length) == math.ceil(length / 4)


def test_stage_budget_table():
    expected = {
        AIStage.OUTLINE: (1200, 3000, 1),
        AIStage.CHAPTERS: (2500, 4000, 3),
        AIStage.HUMANIZE: (2500, 5000, 2),
        AIStage.ILLUSTRATIONS: (0, 1000, 8),
        AIStage.COVER: (0, 1000, 5),
        AIStage.JSON_REPAIR: (2000, 4000, 0),
    }
    actual = {
        stage: (budget.max_output_tokens, budget.max_prompt_tokens, budget.credit_cost)
        for stage, budget in AI_TOKEN_BUDGETS.items()
    }
    assert actual == expected
    assert GLOBAL_LIMITS.total_book_max_tokens == 200_000
    assert GLOBAL_LIMITS.max_chapters_per_run == 2
    assert GLOBAL_LIMITS.max_illustrations_per_run == 4
    assert GLOBAL_LIMITS.max_retries_per_stage == 1
    assert (IMAGE_LIMITS.illustrations, IMAGE_LIMITS.cover) == (4, 2)


@pytest.mark.parametrize("stage", list(AIStage))
def test_within_budget_exactly_at_limit(stage):
    limit = AI_TOKEN_BUDGETS[stage].max_prompt_tokens
    assert is_within_budget(stage, "x" * (limit * 4)).allowed
    assert not is_within_budget(stage, "x" * (limit * 4 + 1)).allowed


def test_rejection_names_stage_estimate_and_limit():
    prompt = "x" * (3000 * 4 * 5)
    check = is_within_budget(AIStage.OUTLINE, prompt)

    assert not check.allowed
    assert check.estimated_tokens == 15000
    assert "outline" in check.error
    assert "15000" in check.error
    assert "3000" in check.error


def test_require_within_budget_raises_validation_error():
    with pytest.raises(BudgetExceededError) as excinfo:
        require_within_budget("cover", "y" * 4004)
    assert excinfo.value.code.value == "VALIDATION_ERROR"
    assert excinfo.value.details["limit"] == 1000


def test_default_full_run_credit_total_is_pinned():
    total = estimate_run_credits(chapter_count=4, variants_per_illustration=2, cover_variants=2)
    assert total == 95


def test_run_credits_clamp_variants_and_count_back_cover():
    clamped = estimate_run_credits(chapter_count=4, variants_per_illustration=9, cover_variants=5)
    assert clamped == 1 + 12 + 8 + 4 * 4 * 8 + 2 * 5
    with_back = estimate_run_credits(
        chapter_count=4, variants_per_illustration=2, cover_variants=2, cover_count=2
    )
    assert with_back == 95 + 10


def test_call_token_requirement_adds_max_output():
    assert call_token_requirement(AIStage.CHAPTERS, "abcd" * 10) == 10 + 2500
    assert call_token_requirement(AIStage.ILLUSTRATIONS, "abcd") == 1


def test_clamp_text_length_prefers_word_boundary():
    text = "word " * 30
    clamped = clamp_text_length(text, 52)
    assert clamped.endswith("...")
    assert clamped[:-3] == text[:49]

    assert clamp_text_length("abcdefghij", 5) == "abcde..."
    assert clamp_text_length("short", 50) == "short"


def test_clamp_texts_proportionally_shrinks_each_field():
    first, second = clamp_texts_proportionally(["a" * 100, "b" * 300], 200)
    assert first == "a" * 50 + "..."
    assert second == "b" * 150 + "..."
    assert clamp_texts_proportionally(["a", "b"], 10) == ["a", "b"]


def test_plan_chapter_batches():
    assert plan_chapter_batches(5) == [[0, 1], [2, 3], [4]]
    assert plan_chapter_batches(4, 3) == [[0, 1, 2], [3]]
    with pytest.raises(ValueError):
        plan_chapter_batches(3, -1)


def test_estimate_cost():
    estimate = estimate_cost(1_000_000, 1_000_000)
    assert estimate.estimated_cost_usd == pytest.approx(18.0)


def test_token_ceiling_refuses_projection_past_limit():
    ceiling = TokenCeiling(1000)
    ceiling.charge(600, stage=AIStage.OUTLINE)
    ceiling.ensure_room(400, stage=AIStage.CHAPTERS)

    with pytest.raises(BudgetExceededError) as excinfo:
        ceiling.ensure_room(401, stage=AIStage.CHAPTERS)
    assert excinfo.value.details["remaining_tokens"] == 400
    assert ceiling.requested == 600

    with pytest.raises(ValueError):
        TokenCeiling(0)
