"""
Text provider client: budget-checked, retried LiteLLM chat calls.
"""

from __future__ import annotations

import asyncio
import logging
import os
import time
from dataclasses import dataclass

from bookstudio.common.budget import AI_TOKEN_BUDGETS, estimate_tokens, require_within_budget
from bookstudio.common.config import DEFAULT_TEXT_MODEL
from bookstudio.common.errors import AIServiceError, OutputLimitExceededError
from bookstudio.common.llm import ChatResult, CompletionCallable, acall_chat_completion
from bookstudio.common.retry import RetryPolicy, SleepFn, call_with_retry
from bookstudio.common.stages import AIStage

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TextGenerationRequest:
    system: str
    prompt: str
    stage: AIStage
    max_output_tokens: int | None = None


@dataclass(frozen=True)
class TextGeneration:
    """
    Result of one text call.

    Token counts fall back to the ``len / 4`` estimate when the provider
    does not report usage.
    """

    text: str
    input_tokens: int
    output_tokens: int
    provider: str
    model: str
    processing_time_ms: int
    finish_reason: str | None = None


class TextGenerator:
    """
    Thin async wrapper around a LiteLLM-compatible completion callable.

    Parameters
    ----------
    api_key:
        Provider API key. Falls back to ``OPENAI_API_KEY`` then ``LITELLM_API_KEY``.
    model:
        LiteLLM model name. Falls back to ``BOOKSTUDIO_TEXT_MODEL``, then
        ``LITELLM_MODEL``, then ``gpt-4.1-mini``.
    completion_fn:
        Async callable with the signature of :func:`acall_chat_completion`.
        Mainly useful for testing.
    retry_policy:
        Timeout and transient-error retry bounds for each call.
    sleep:
        Awaitable used between retries.
    """

    provider_name = "litellm"

    def __init__(
        self,
        *,
        api_key: str | None = None,
        model: str | None = None,
        completion_fn: CompletionCallable | None = None,
        retry_policy: RetryPolicy | None = None,
        temperature: float = 0.7,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        self._api_key = api_key or os.getenv("OPENAI_API_KEY") or os.getenv("LITELLM_API_KEY")
        self._model = (
            model
            or os.getenv("BOOKSTUDIO_TEXT_MODEL")
            or os.getenv("LITELLM_MODEL")
            or DEFAULT_TEXT_MODEL
        )
        self._completion_fn: CompletionCallable = completion_fn or acall_chat_completion
        self._retry_policy = retry_policy or RetryPolicy()
        self._temperature = temperature
        self._sleep = sleep

    @property
    def model(self) -> str:
        """Return the model identifier in use."""
        return self._model

    async def generate_text(self, request: TextGenerationRequest) -> TextGeneration:
        """
        Validate the prompt against the stage budget, then call the model.

        Raises :class:`BudgetExceededError` before any remote call when the
        prompt is too large.
        """
        require_within_budget(request.stage, request.prompt)
        budget = AI_TOKEN_BUDGETS[request.stage]
        max_tokens = request.max_output_tokens or budget.max_output_tokens
        stage_name = request.stage.value

        async def _attempt() -> ChatResult:
            result = await self._completion_fn(
                model=self._model,
                messages=[
                    {"role": "system", "content": request.system},
                    {"role": "user", "content": request.prompt},
                ],
                temperature=self._temperature,
                max_tokens=max_tokens,
                api_key=self._api_key,
            )
            reported_output = result.output_tokens
            if result.finish_reason == "length" or (
                reported_output is not None and reported_output >= max_tokens
            ):
                raise OutputLimitExceededError(
                    f"Output for {stage_name} reached the {max_tokens} token limit.",
                    details={"stage": stage_name, "output_tokens": reported_output},
                )
            if not result.text:
                raise AIServiceError(
                    "LLM response did not contain any text content.",
                    details={"stage": stage_name},
                )
            return result

        started = time.perf_counter()
        result = await call_with_retry(
            _attempt,
            provider=self.provider_name,
            operation_name=f"{stage_name} text",
            policy=self._retry_policy,
            sleep=self._sleep,
        )
        elapsed_ms = int((time.perf_counter() - started) * 1000)

        return TextGeneration(
            text=result.text,
            input_tokens=(
                result.input_tokens
                if result.input_tokens is not None
                else estimate_tokens(request.system) + estimate_tokens(request.prompt)
            ),
            output_tokens=(
                result.output_tokens
                if result.output_tokens is not None
                else estimate_tokens(result.text)
            ),
            provider=self.provider_name,
            model=self._model,
            processing_time_ms=elapsed_ms,
            finish_reason=result.finish_reason,
        )
