"""
Common utilities shared across the book studio modules.
"""

from .budget import (
    AI_TOKEN_BUDGETS,
    GLOBAL_LIMITS,
    IMAGE_LIMITS,
    BudgetCheck,
    StageBudget,
    TokenCeiling,
    clamp_text_length,
    clamp_texts_proportionally,
    estimate_cost,
    estimate_run_credits,
    estimate_tokens,
    estimate_total_tokens,
    is_within_budget,
    plan_chapter_batches,
)
from .cancellation import CancelToken
from .config import PipelineSettings
from .errors import (
    AIServiceError,
    BookStudioError,
    BudgetExceededError,
    CancelledError,
    ErrorCode,
    InsufficientCreditsError,
    NotFoundError,
    OutputLimitExceededError,
    ProjectBusyError,
    RateLimitError,
    StorageError,
    ValidationError,
)
from .llm import ChatResult, CompletionCallable, acall_chat_completion
from .retry import RetryPolicy, call_with_retry, is_retryable_error
from .stages import AIStage, ProjectStage, can_run_stage, next_stage

__all__ = [
    "AI_TOKEN_BUDGETS",
    "GLOBAL_LIMITS",
    "IMAGE_LIMITS",
    "AIServiceError",
    "AIStage",
    "BookStudioError",
    "BudgetCheck",
    "BudgetExceededError",
    "CancelToken",
    "CancelledError",
    "ChatResult",
    "CompletionCallable",
    "ErrorCode",
    "InsufficientCreditsError",
    "NotFoundError",
    "OutputLimitExceededError",
    "PipelineSettings",
    "ProjectBusyError",
    "ProjectStage",
    "RateLimitError",
    "RetryPolicy",
    "StageBudget",
    "StorageError",
    "TokenCeiling",
    "ValidationError",
    "acall_chat_completion",
    "call_with_retry",
    "can_run_stage",
    "clamp_text_length",
    "clamp_texts_proportionally",
    "estimate_cost",
    "estimate_run_credits",
    "estimate_tokens",
    "estimate_total_tokens",
    "is_retryable_error",
    "is_within_budget",
    "next_stage",
    "plan_chapter_batches",
]
