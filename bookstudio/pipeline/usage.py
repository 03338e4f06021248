"""
Usage statistics and the credit ledger shared across pipeline runs.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Mapping, Protocol

from bookstudio.common.budget import estimate_cost

from .artifacts import utc_timestamp

logger = logging.getLogger(__name__)


@dataclass
class UsageCounter:
    input_tokens: int = 0
    output_tokens: int = 0
    calls: int = 0
    failed_calls: int = 0
    processing_time_ms: int = 0
    credits: int = 0

    def add(self, record: "UsageRecord") -> None:
        self.input_tokens += record.input_tokens
        self.output_tokens += record.output_tokens
        self.processing_time_ms += record.processing_time_ms
        self.credits += record.credits
        if record.success:
            self.calls += 1
        else:
            self.failed_calls += 1

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any] | None) -> "UsageCounter":
        if not data:
            return cls()
        return cls(**{key: int(data.get(key, 0) or 0) for key in cls.__dataclass_fields__})


@dataclass(frozen=True)
class UsageRecord:
    """One remote call, successful or not."""

    project_id: str
    stage: str
    provider: str
    input_tokens: int = 0
    output_tokens: int = 0
    processing_time_ms: int = 0
    success: bool = True
    credits: int = 0
    attempt_id: str | None = None
    recorded_at: str = field(default_factory=utc_timestamp)


@dataclass
class UsageStats:
    """Running totals for one project, keyed by stage and by provider."""

    total: UsageCounter = field(default_factory=UsageCounter)
    by_stage: dict[str, UsageCounter] = field(default_factory=dict)
    by_provider: dict[str, UsageCounter] = field(default_factory=dict)
    updated_at: str | None = None

    def record(self, record: UsageRecord) -> None:
        self.total.add(record)
        self.by_stage.setdefault(record.stage, UsageCounter()).add(record)
        self.by_provider.setdefault(record.provider, UsageCounter()).add(record)
        self.updated_at = record.recorded_at

    def to_dict(self) -> dict[str, Any]:
        cost = estimate_cost(self.total.input_tokens, self.total.output_tokens)
        return {
            "total": asdict(self.total),
            "by_stage": {stage: asdict(counter) for stage, counter in self.by_stage.items()},
            "by_provider": {name: asdict(counter) for name, counter in self.by_provider.items()},
            "estimated_cost_usd": round(cost.estimated_cost_usd, 6),
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any] | None) -> "UsageStats":
        if not data:
            return cls()
        return cls(
            total=UsageCounter.from_mapping(data.get("total")),
            by_stage={
                stage: UsageCounter.from_mapping(counter)
                for stage, counter in (data.get("by_stage") or {}).items()
            },
            by_provider={
                name: UsageCounter.from_mapping(counter)
                for name, counter in (data.get("by_provider") or {}).items()
            },
            updated_at=data.get("updated_at"),
        )


class UsageLedger:
    """
    Append-only usage accumulator shared by every run in the process.

    Each ``record`` call completes without awaiting, so concurrent project
    runs on one event loop never interleave a partial update.
    """

    def __init__(self) -> None:
        self._records: list[UsageRecord] = []
        self._stats: dict[str, UsageStats] = {}

    @property
    def records(self) -> tuple[UsageRecord, ...]:
        return tuple(self._records)

    def seed_project(self, project_id: str, snapshot: Mapping[str, Any] | None) -> None:
        """Resume a project's counters from a persisted ``_aiUsage`` snapshot."""
        if project_id not in self._stats and snapshot:
            self._stats[project_id] = UsageStats.from_mapping(snapshot)

    def record(self, record: UsageRecord) -> None:
        self._records.append(record)
        self._stats.setdefault(record.project_id, UsageStats()).record(record)
        logger.debug(
            "Usage recorded for %s/%s via %s: in=%s out=%s success=%s",
            record.project_id,
            record.stage,
            record.provider,
            record.input_tokens,
            record.output_tokens,
            record.success,
        )

    def add_credits(self, project_id: str, stage: str, credits: int) -> None:
        """Attribute credits charged for an accepted result."""
        stats = self.stats_for(project_id)
        stats.total.credits += credits
        stats.by_stage.setdefault(stage, UsageCounter()).credits += credits

    def stats_for(self, project_id: str) -> UsageStats:
        return self._stats.setdefault(project_id, UsageStats())

    def snapshot(self, project_id: str) -> dict[str, Any]:
        return self.stats_for(project_id).to_dict()


# ------------------------------------------------------------------ credits


class DeductionStatus(str, Enum):
    OK = "ok"
    INSUFFICIENT = "insufficient"


@dataclass(frozen=True)
class CreditEntry:
    account_id: str
    amount: int
    attempt_id: str
    balance_after: int
    created_at: str = field(default_factory=utc_timestamp)


@dataclass(frozen=True)
class DeductionResult:
    status: DeductionStatus
    balance: int
    duplicate: bool = False

    @property
    def ok(self) -> bool:
        return self.status is DeductionStatus.OK


class CreditLedger(Protocol):
    async def get_balance(self, account_id: str) -> int: ...

    async def deduct_credits(self, account_id: str, amount: int, attempt_id: str) -> DeductionResult: ...


class InMemoryCreditLedger:
    """
    Reference credit ledger.

    Deductions are idempotent per ``attempt_id``: replaying one returns the
    original result without charging again.
    """

    def __init__(self, balances: Mapping[str, int] | None = None) -> None:
        self._balances: dict[str, int] = dict(balances or {})
        self._entries: list[CreditEntry] = []
        self._applied: dict[str, DeductionResult] = {}
        self._lock = asyncio.Lock()

    @property
    def entries(self) -> tuple[CreditEntry, ...]:
        return tuple(self._entries)

    def total_charged(self, account_id: str | None = None) -> int:
        return sum(
            entry.amount
            for entry in self._entries
            if account_id is None or entry.account_id == account_id
        )

    async def get_balance(self, account_id: str) -> int:
        return self._balances.get(account_id, 0)

    async def add_credits(self, account_id: str, amount: int) -> int:
        if amount < 0:
            raise ValueError("Credit top-ups must be non-negative.")
        async with self._lock:
            self._balances[account_id] = self._balances.get(account_id, 0) + amount
            return self._balances[account_id]

    async def deduct_credits(self, account_id: str, amount: int, attempt_id: str) -> DeductionResult:
        if amount < 0:
            raise ValueError("Credit deductions must be non-negative.")
        async with self._lock:
            previous = self._applied.get(attempt_id)
            if previous is not None:
                return DeductionResult(previous.status, self._balances.get(account_id, 0), duplicate=True)

            balance = self._balances.get(account_id, 0)
            if balance < amount:
                return DeductionResult(DeductionStatus.INSUFFICIENT, balance)

            balance -= amount
            self._balances[account_id] = balance
            result = DeductionResult(DeductionStatus.OK, balance)
            self._applied[attempt_id] = result
            self._entries.append(CreditEntry(account_id, amount, attempt_id, balance))
            logger.info("Charged %s credits to %s for %s (balance %s).", amount, account_id, attempt_id, balance)
            return result
