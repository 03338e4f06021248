"""
LiteLLM-powered chat completion helper utilities.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Mapping, MutableMapping, Sequence

from litellm import acompletion

ChatMessage = Mapping[str, Any]


@dataclass
class ChatResult:
    """
    Structured response returned from an LLM chat completion.

    Token counts are the provider-reported usage and are ``None`` when the
    provider omits them.
    """

    text: str
    raw: Any
    input_tokens: int | None = None
    output_tokens: int | None = None
    finish_reason: str | None = None


CompletionCallable = Callable[..., Awaitable[ChatResult]]


def _lookup(container: Any, key: str | int) -> Any:
    if container is None:
        return None
    try:
        return container[key]
    except (KeyError, IndexError, TypeError):
        pass
    if isinstance(key, str):
        return getattr(container, key, None)
    return None


def _coerce_token_count(value: Any) -> int | None:
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


async def acall_chat_completion(
    *,
    model: str,
    messages: Sequence[ChatMessage],
    temperature: float | None = None,
    max_tokens: int | None = None,
    api_key: str | None = None,
    **extra_kwargs: Any,
) -> ChatResult:
    """
    Invoke LiteLLM's async `acompletion` API and return the consolidated text.
    """
    payload: MutableMapping[str, Any] = {
        "model": model,
        "messages": list(messages),
    }

    if temperature is not None:
        payload["temperature"] = temperature

    if max_tokens is not None:
        payload["max_tokens"] = max_tokens

    if api_key is not None:
        payload["api_key"] = api_key

    payload.update(extra_kwargs)

    response = await acompletion(**payload)

    try:
        choice = response["choices"][0]
        message = choice["message"]["content"]
    except (KeyError, IndexError, TypeError) as exc:
        raise RuntimeError("Unexpected LiteLLM response format.") from exc

    usage = _lookup(response, "usage")
    text = str(message or "").strip()
    return ChatResult(
        text=text,
        raw=response,
        input_tokens=_coerce_token_count(_lookup(usage, "prompt_tokens")),
        output_tokens=_coerce_token_count(_lookup(usage, "completion_tokens")),
        finish_reason=_lookup(choice, "finish_reason"),
    )
