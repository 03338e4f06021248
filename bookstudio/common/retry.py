"""
Timeout, retry and error classification shared by the provider clients.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, TypeVar

from .errors import AIServiceError, BookStudioError, RateLimitError

logger = logging.getLogger(__name__)

T = TypeVar("T")
SleepFn = Callable[[float], Awaitable[None]]

TRANSIENT_ERROR_MARKERS = (
    "econnreset",
    "etimedout",
    "connection reset",
    "timeout",
    "timed out",
)


@dataclass(frozen=True)
class RetryPolicy:
    """
    Attributes
    ----------
    max_retries:
        Extra attempts after the first call, only for retryable errors.
    base_delay:
        Seconds to wait before the first retry; doubled on every further retry.
    timeout:
        Per-attempt timeout in seconds. ``None`` disables it.
    """

    max_retries: int = 2
    base_delay: float = 1.0
    timeout: float | None = 60.0

    @property
    def total_attempts(self) -> int:
        return max(self.max_retries, 0) + 1


def backoff_delay(base_delay: float, attempt: int) -> float:
    """Exponential delay for the zero-based ``attempt`` that just failed."""
    return base_delay * (2**attempt)


def extract_status_code(exc: BaseException) -> int | None:
    for attr in ("status_code", "status", "http_status"):
        value = getattr(exc, attr, None)
        if isinstance(value, int):
            return value
    response = getattr(exc, "response", None)
    value = getattr(response, "status_code", None)
    if isinstance(value, int):
        return value
    return None


def is_retryable_error(exc: BaseException) -> bool:
    """
    Classify ``exc`` as transient.

    Retryable: HTTP 429, HTTP 5xx, timeouts, and messages carrying a known
    transient network marker. Everything else propagates immediately.
    """
    if isinstance(exc, BookStudioError):
        return exc.retryable
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError)):
        return True

    status = extract_status_code(exc)
    if status is not None:
        return status == 429 or status >= 500

    message = str(exc).lower()
    return any(marker in message for marker in TRANSIENT_ERROR_MARKERS)


def classify_provider_error(
    exc: BaseException,
    *,
    provider: str,
    details: dict[str, Any] | None = None,
) -> BookStudioError:
    """Wrap a raw provider exception into the pipeline's error taxonomy."""
    if isinstance(exc, BookStudioError):
        exc.details.update(details or {})
        return exc

    payload = {"provider": provider, **(details or {})}
    status = extract_status_code(exc)
    if status is not None:
        payload["status_code"] = status

    if status == 429:
        return RateLimitError(f"{provider} rate limit exceeded: {exc}", details=payload)
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError)):
        return AIServiceError(f"{provider} request timed out.", details=payload)
    return AIServiceError(f"{provider} request failed: {exc}", details=payload)


def _elapsed_ms(started: float) -> int:
    return int((time.perf_counter() - started) * 1000)


async def call_with_retry(
    operation: Callable[[], Awaitable[T]],
    *,
    provider: str,
    operation_name: str,
    policy: RetryPolicy,
    sleep: SleepFn = asyncio.sleep,
) -> T:
    """
    Await ``operation`` under ``policy``, retrying transient failures.

    The final failure is re-raised as a :class:`BookStudioError` whose
    ``details`` carry the provider name, attempt count and processing time.
    """
    total_attempts = policy.total_attempts
    for attempt in range(total_attempts):
        started = time.perf_counter()
        try:
            if policy.timeout is not None:
                result = await asyncio.wait_for(operation(), timeout=policy.timeout)
            else:
                result = await operation()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            elapsed = _elapsed_ms(started)
            retryable = is_retryable_error(exc)
            logger.warning(
                "%s %s failed (attempt %d/%d, processing_time_ms=%d, retryable=%s): %s",
                provider,
                operation_name,
                attempt + 1,
                total_attempts,
                elapsed,
                retryable,
                exc,
            )
            if not retryable or attempt >= total_attempts - 1:
                raise classify_provider_error(
                    exc,
                    provider=provider,
                    details={
                        "operation": operation_name,
                        "attempts": attempt + 1,
                        "processing_time_ms": elapsed,
                    },
                ) from exc

            delay = backoff_delay(policy.base_delay, attempt)
            logger.info(
                "%s %s: retrying in %.2f seconds due to %s.",
                provider,
                operation_name,
                delay,
                type(exc).__name__,
            )
            await sleep(delay)
            continue

        logger.info(
            "%s %s succeeded (attempt %d/%d, processing_time_ms=%d).",
            provider,
            operation_name,
            attempt + 1,
            total_attempts,
            _elapsed_ms(started),
        )
        return result

    raise AssertionError("unreachable")
