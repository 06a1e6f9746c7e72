"""
Data models for storage layer.

Defines ledger entries, per-account usage counters and aggregate rows.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from usage_meter.core import cycles


class OperationKind(Enum):
    """Kinds of billable operations recorded in the ledger."""
    SUMMARY_GENERATED = "summary_generated"
    SUMMARY_CACHED = "summary_cached"
    CHAT_QUERY = "chat_query"
    CHAT_CACHED = "chat_cached"
    THREAD_ANALYSIS = "thread_analysis"

    @property
    def is_chat(self) -> bool:
        """True for operations metered against the chat quota."""
        return self in (OperationKind.CHAT_QUERY, OperationKind.CHAT_CACHED)

    @classmethod
    def parse(cls, value) -> "OperationKind":
        """Accept either an OperationKind or its string value."""
        if isinstance(value, cls):
            return value
        try:
            return cls(value)
        except ValueError:
            valid = [kind.value for kind in cls]
            raise ValueError(f"Unknown operation kind {value!r}, expected one of: {valid}")


@dataclass(frozen=True)
class CostLedgerEntry:
    """Immutable record of one billable operation.

    Append-only events that create an auditable ledger of AI costs.
    Once written, these records are never modified; only the retention
    job may delete them.
    """
    account_id: str
    operation_kind: OperationKind
    model: str
    input_tokens: int
    output_tokens: int
    cost_usd: Decimal
    cached: bool = False
    timestamp: datetime = field(default_factory=cycles.utcnow)

    def __post_init__(self):
        """Validate entry values."""
        if not self.account_id:
            raise ValueError("account_id is required")
        if self.input_tokens < 0 or self.output_tokens < 0:
            raise ValueError("token counts cannot be negative")
        if self.cost_usd < 0:
            raise ValueError("cost_usd cannot be negative")

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


@dataclass(frozen=True)
class UsageCounters:
    """Snapshot of one account's usage counters.

    Adapters hand out snapshots; mutation happens only through the
    store's reset and increment operations.
    """
    account_id: str
    account_created_at: datetime
    last_daily_reset: datetime
    last_monthly_reset: datetime
    summaries_today: int = 0
    chat_queries_today: int = 0
    summaries_this_month: int = 0
    chat_queries_this_month: int = 0
    cost_this_month: Decimal = Decimal("0")
    chat_queries_this_cycle: int = 0
    cycle_renewal_at: Optional[datetime] = None

    @classmethod
    def fresh(cls, account_id: str, now: datetime,
              created_at: Optional[datetime] = None) -> "UsageCounters":
        """Zeroed counters for an account seen for the first time."""
        now = cycles.to_utc(now)
        return cls(
            account_id=account_id,
            account_created_at=cycles.to_utc(created_at) if created_at else now,
            last_daily_reset=now,
            last_monthly_reset=now,
        )

    def with_resets_applied(self, now: datetime) -> "UsageCounters":
        """Project the counters after every reset due at ``now``.

        Pure; the engine evaluates quotas against this projection when a
        due reset could not be persisted.
        """
        counters = self
        if cycles.daily_reset_due(counters.last_daily_reset, now):
            counters = replace(
                counters,
                summaries_today=0,
                chat_queries_today=0,
                last_daily_reset=cycles.to_utc(now),
            )
        if cycles.monthly_reset_due(counters.last_monthly_reset, now):
            counters = replace(
                counters,
                summaries_this_month=0,
                chat_queries_this_month=0,
                cost_this_month=Decimal("0"),
                last_monthly_reset=cycles.to_utc(now),
            )
        renewal = counters.cycle_renewal_at
        if renewal is None:
            renewal = cycles.seed_cycle_renewal(counters.account_created_at)
            counters = replace(counters, cycle_renewal_at=renewal)
        if cycles.cycle_reset_due(renewal, now):
            counters = replace(
                counters,
                chat_queries_this_cycle=0,
                cycle_renewal_at=cycles.next_cycle_renewal(now),
            )
        return counters


@dataclass(frozen=True)
class KindAggregate:
    """Ledger totals for one operation kind."""
    count: int
    total_cost: Decimal
    cached_count: int
    total_tokens: int = 0


@dataclass(frozen=True)
class ModelAggregate:
    """Ledger totals for one model."""
    model: str
    count: int
    total_cost: Decimal
    input_tokens: int
    output_tokens: int


@dataclass(frozen=True)
class SpenderSummary:
    """One row of the top spenders report."""
    account_id: str
    total_cost: Decimal
    total_operations: int
    total_tokens: int
    cached_operations: int

    @property
    def cache_hit_rate(self) -> float:
        """Percentage of operations served from cache."""
        if self.total_operations == 0:
            return 0.0
        return self.cached_operations / self.total_operations * 100


@dataclass(frozen=True)
class DailyCost:
    """Ledger totals for one UTC calendar day."""
    day: str
    cost: Decimal
    operations: int
    unique_accounts: int
