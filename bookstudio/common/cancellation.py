"""
Cooperative cancellation handle polled before every remote call.
"""

from __future__ import annotations

from .errors import CancelledError


class CancelToken:
    """
    Boolean-like flag threaded through every async step of a run.

    Tripping the token never aborts a call that is already in flight; the
    runner checks it immediately before issuing the next one.
    """

    def __init__(self) -> None:
        self._cancelled = False
        self._reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def reason(self) -> str | None:
        return self._reason

    def cancel(self, reason: str | None = None) -> None:
        self._cancelled = True
        self._reason = reason or self._reason

    def reset(self) -> None:
        self._cancelled = False
        self._reason = None

    def raise_if_cancelled(self, what: str = "Generation") -> None:
        if self._cancelled:
            suffix = f": {self._reason}" if self._reason else ""
            raise CancelledError(f"{what} cancelled{suffix}")

    def __repr__(self) -> str:
        return f"CancelToken(cancelled={self._cancelled!r})"
