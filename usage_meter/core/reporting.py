"""
Usage and cost reports.

Read-only views: a per-account "my usage" summary built from the
counters, and an admin cost report built from ledger aggregation.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional

from . import cycles
from .ceiling import CeilingStatus, CostCeilingGuard
from .entitlement import (
    UNLIMITED,
    EntitlementPolicy,
    PlanState,
    days_remaining,
    is_in_trial,
    is_premium_active,
)
from usage_meter.storage.ledger import CostLedger
from usage_meter.storage.models import (
    DailyCost,
    KindAggregate,
    ModelAggregate,
    OperationKind,
    SpenderSummary,
    UsageCounters,
)


def _percentage(used: int, cap: int) -> int:
    if cap == UNLIMITED or cap == 0:
        return 0
    return round(used / cap * 100)


@dataclass(frozen=True)
class UsageSummary:
    """Limits, usage, percentages and renewal dates for one account."""
    account_id: str
    limits: Dict[str, int]
    current_usage: Dict[str, Any]
    percentage_used: Dict[str, int]
    renewal_dates: Dict[str, datetime]
    cost: CeilingStatus
    is_premium: bool
    is_in_trial: bool
    days_remaining: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "accountId": self.account_id,
            "limits": dict(self.limits),
            "currentUsage": {
                key: str(value) if isinstance(value, Decimal) else value
                for key, value in self.current_usage.items()
            },
            "percentageUsed": dict(self.percentage_used),
            "cycleRenewalDates": {key: cycles.to_iso(value) for key, value in self.renewal_dates.items()},
            "cost": {
                "limit": str(self.cost.limit) if self.cost.limit is not None else None,
                "used": str(self.cost.used),
                "remaining": str(self.cost.remaining) if self.cost.remaining is not None else None,
                "percentageUsed": self.cost.percentage_used,
            },
            "isPremium": self.is_premium,
            "isInTrial": self.is_in_trial,
            "daysRemaining": self.days_remaining,
        }


def build_usage_summary(
    counters: UsageCounters,
    plan: PlanState,
    policy: EntitlementPolicy,
    ceiling: CostCeilingGuard,
    now: datetime
) -> UsageSummary:
    """Assemble the "my usage" view from counters with resets applied."""
    limits = policy.effective_limits(plan, now)
    summary_cap = UNLIMITED if plan.is_admin else limits.daily_summary_cap
    chat_cap = UNLIMITED if plan.is_admin else limits.monthly_chat_cap
    renewal = counters.cycle_renewal_at or cycles.seed_cycle_renewal(counters.account_created_at)

    return UsageSummary(
        account_id=counters.account_id,
        limits={
            "dailySummaries": summary_cap,
            "chatQueriesPerCycle": chat_cap,
        },
        current_usage={
            "summariesToday": counters.summaries_today,
            "summariesThisMonth": counters.summaries_this_month,
            "chatQueriesToday": counters.chat_queries_today,
            "chatQueriesThisMonth": counters.chat_queries_this_month,
            "chatQueriesThisCycle": counters.chat_queries_this_cycle,
            "costThisMonth": counters.cost_this_month,
        },
        percentage_used={
            "dailySummaries": _percentage(counters.summaries_today, summary_cap),
            "chatQueries": _percentage(counters.chat_queries_this_cycle, chat_cap),
        },
        renewal_dates={
            "daily": cycles.start_of_next_day(now),
            "monthly": cycles.start_of_next_month(now),
            "chatCycle": renewal,
        },
        cost=ceiling.status(counters),
        is_premium=is_premium_active(plan, now, policy.trial_grants_unlimited),
        is_in_trial=is_in_trial(plan, now),
        days_remaining=days_remaining(plan, now),
    )


@dataclass(frozen=True)
class CostAnalytics:
    """Admin cost report over a trailing window."""
    window_start: datetime
    window_end: datetime
    total_cost: Decimal
    total_operations: int
    cached_operations: int
    top_spenders: List[SpenderSummary] = field(default_factory=list)
    by_model: List[ModelAggregate] = field(default_factory=list)
    by_kind: Dict[OperationKind, KindAggregate] = field(default_factory=dict)
    daily: List[DailyCost] = field(default_factory=list)

    @property
    def cache_hit_rate(self) -> float:
        """Percentage of operations served from cache."""
        if self.total_operations == 0:
            return 0.0
        return self.cached_operations / self.total_operations * 100

    @property
    def average_cost(self) -> Decimal:
        if self.total_operations == 0:
            return Decimal("0")
        return self.total_cost / self.total_operations


def build_cost_analytics(
    ledger: CostLedger,
    window_days: int = 30,
    top_limit: int = 10,
    now: Optional[datetime] = None
) -> CostAnalytics:
    """Aggregate the ledger over the trailing ``window_days``.

    Args:
        ledger: Ledger to aggregate
        window_days: Length of the trailing window
        top_limit: Number of top spenders to include
        now: Window end (defaults to current UTC time)

    Returns:
        CostAnalytics for [now - window_days, now]
    """
    end = cycles.to_utc(now or cycles.utcnow())
    start = end - timedelta(days=window_days)
    # Include entries stamped exactly at "now"
    query_end = end + timedelta(microseconds=1)

    by_kind = ledger.aggregate_by_kind(None, start, query_end)
    return CostAnalytics(
        window_start=start,
        window_end=end,
        total_cost=sum((agg.total_cost for agg in by_kind.values()), Decimal("0")),
        total_operations=sum(agg.count for agg in by_kind.values()),
        cached_operations=sum(agg.cached_count for agg in by_kind.values()),
        top_spenders=ledger.top_spenders(start, query_end, top_limit),
        by_model=ledger.aggregate_by_model(start, query_end),
        by_kind=by_kind,
        daily=ledger.daily_costs(start, query_end),
    )
