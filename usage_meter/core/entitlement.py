"""
Entitlement decisions.

Pure functions mapping a plan snapshot and usage counters to an
allow/deny decision with remaining quota.

Decision Order:
1. Admins are always allowed (unlimited)
2. Premium accounts (active paid period, or trial when trials grant
   unlimited access) are allowed (unlimited)
3. Everyone else is checked against the plan's caps
"""

from dataclasses import dataclass, field, replace
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional, Union

from . import cycles
from usage_meter.storage.models import UsageCounters

UNLIMITED = -1

# Whether an active trial lifts the daily summary and chat caps the same
# way a paid subscription does. Overridable per deployment via
# ``entitlement.trial_grants_unlimited``.
TRIAL_GRANTS_UNLIMITED = True


class PlanType(Enum):
    """Plans known to the billing subsystem."""
    FREE = "free"
    MONTHLY = "monthly"


class DenialReason(Enum):
    """Machine-readable reasons a request was refused."""
    QUOTA_EXCEEDED = "quota_exceeded"
    COST_CEILING_EXCEEDED = "cost_ceiling_exceeded"


@dataclass(frozen=True)
class PlanState:
    """Read-only plan snapshot supplied by the billing/identity layer per request."""
    plan_type: PlanType = PlanType.FREE
    subscription_active: bool = False
    current_period_end: Optional[datetime] = None
    trial_ends_at: Optional[datetime] = None
    is_admin: bool = False
    created_at: Optional[datetime] = None


@dataclass(frozen=True)
class PlanLimits:
    """Caps for one plan; UNLIMITED (-1) lifts a cap."""
    daily_summary_cap: int
    monthly_chat_cap: int

    def __post_init__(self):
        """Validate caps are -1 or non-negative."""
        if self.daily_summary_cap < UNLIMITED:
            raise ValueError("daily_summary_cap must be >= -1")
        if self.monthly_chat_cap < UNLIMITED:
            raise ValueError("monthly_chat_cap must be >= -1")


@dataclass(frozen=True)
class PlanLimitsTable:
    """Caps keyed by plan type."""
    limits: Dict[PlanType, PlanLimits]

    def for_plan(self, plan_type: PlanType) -> PlanLimits:
        if plan_type not in self.limits:
            raise ValueError(f"No limits configured for plan: {plan_type.value}")
        return self.limits[plan_type]


DEFAULT_PLAN_LIMITS = PlanLimitsTable({
    PlanType.FREE: PlanLimits(daily_summary_cap=3, monthly_chat_cap=5),
    PlanType.MONTHLY: PlanLimits(daily_summary_cap=UNLIMITED, monthly_chat_cap=UNLIMITED),
})


@dataclass(frozen=True)
class Decision:
    """Outcome of an entitlement or ceiling check.

    ``limit``, ``used`` and ``remaining`` are operation counts for quota
    decisions and dollar amounts for cost-ceiling denials. UNLIMITED in
    ``remaining`` means no cap applies.
    """
    allowed: bool
    remaining: Union[int, Decimal]
    limit: Union[int, Decimal]
    used: Union[int, Decimal] = 0
    reason: Optional[DenialReason] = None
    resets_at: Optional[datetime] = None
    warning_threshold: bool = False
    degraded: bool = False
    details: Dict[str, Any] = field(default_factory=dict)

    @property
    def unlimited(self) -> bool:
        return self.allowed and self.remaining == UNLIMITED

    def to_dict(self) -> Dict[str, Any]:
        """Serializable payload for API responses."""
        return {
            "allowed": self.allowed,
            "reason": self.reason.value if self.reason else None,
            "limit": str(self.limit) if isinstance(self.limit, Decimal) else self.limit,
            "used": str(self.used) if isinstance(self.used, Decimal) else self.used,
            "remaining": str(self.remaining) if isinstance(self.remaining, Decimal) else self.remaining,
            "resetsAt": cycles.to_iso(self.resets_at) if self.resets_at else None,
            "warningThreshold": self.warning_threshold,
            "degraded": self.degraded,
            **self.details,
        }


def is_in_trial(plan: PlanState, now: Optional[datetime] = None) -> bool:
    now = cycles.to_utc(now or cycles.utcnow())
    return plan.trial_ends_at is not None and now < cycles.to_utc(plan.trial_ends_at)


def has_active_subscription(plan: PlanState, now: Optional[datetime] = None) -> bool:
    now = cycles.to_utc(now or cycles.utcnow())
    return (
        plan.subscription_active
        and plan.current_period_end is not None
        and now < cycles.to_utc(plan.current_period_end)
    )


def is_premium_active(plan: PlanState, now: Optional[datetime] = None,
                      trial_grants_unlimited: bool = TRIAL_GRANTS_UNLIMITED) -> bool:
    """True if the account currently holds premium entitlement.

    Args:
        plan: Plan snapshot
        now: Evaluation time (defaults to current UTC time)
        trial_grants_unlimited: Count an active trial as premium

    Returns:
        True for an active, unexpired paid period, or an active trial
        when ``trial_grants_unlimited`` is set
    """
    if trial_grants_unlimited and is_in_trial(plan, now):
        return True
    return has_active_subscription(plan, now)


def days_remaining(plan: PlanState, now: Optional[datetime] = None) -> int:
    """Whole days left in the trial, or else in the paid period (0 if neither)."""
    now = cycles.to_utc(now or cycles.utcnow())
    if is_in_trial(plan, now):
        end = cycles.to_utc(plan.trial_ends_at)
    elif has_active_subscription(plan, now):
        end = cycles.to_utc(plan.current_period_end)
    else:
        return 0
    seconds = (end - now).total_seconds()
    # ceil to whole days
    return max(0, int(-(-seconds // 86400)))


class EntitlementPolicy:
    """Quota decisions for summaries and chat queries."""

    def __init__(
        self,
        limits: PlanLimitsTable = DEFAULT_PLAN_LIMITS,
        trial_grants_unlimited: bool = TRIAL_GRANTS_UNLIMITED
    ):
        self.limits = limits
        self.trial_grants_unlimited = trial_grants_unlimited

    def effective_limits(self, plan: PlanState, now: Optional[datetime] = None) -> PlanLimits:
        """Caps that apply right now.

        Premium accounts get their plan's caps (a free plan in trial gets
        the paid caps); a lapsed paid plan falls back to free caps.
        """
        if is_premium_active(plan, now, self.trial_grants_unlimited):
            plan_type = plan.plan_type if plan.plan_type != PlanType.FREE else PlanType.MONTHLY
            return self.limits.for_plan(plan_type)
        return self.limits.for_plan(PlanType.FREE)

    def _check(self, plan: PlanState, cap: int, used: int,
               resets_at: Optional[datetime]) -> Decision:
        if plan.is_admin or cap == UNLIMITED:
            return Decision(allowed=True, remaining=UNLIMITED, limit=UNLIMITED, used=used)

        remaining = max(0, cap - used)
        allowed = remaining > 0
        return Decision(
            allowed=allowed,
            remaining=remaining,
            limit=cap,
            used=used,
            reason=None if allowed else DenialReason.QUOTA_EXCEEDED,
            resets_at=resets_at,
        )

    def check_summary(self, plan: PlanState, counters: UsageCounters,
                      now: Optional[datetime] = None) -> Decision:
        """Daily summary quota check.

        Args:
            plan: Plan snapshot
            counters: Counters with due resets already applied
            now: Evaluation time

        Returns:
            Decision; denied decisions carry the next UTC midnight as resets_at
        """
        now = now or cycles.utcnow()
        cap = self.effective_limits(plan, now).daily_summary_cap
        return self._check(plan, cap, counters.summaries_today, cycles.start_of_next_day(now))

    def check_chat(self, plan: PlanState, counters: UsageCounters,
                   now: Optional[datetime] = None) -> Decision:
        """Chat quota check against the rolling 30-day cycle.

        Returns:
            Decision; resets_at is the cycle renewal time
        """
        now = now or cycles.utcnow()
        cap = self.effective_limits(plan, now).monthly_chat_cap
        renewal = counters.cycle_renewal_at or cycles.seed_cycle_renewal(counters.account_created_at)
        decision = self._check(plan, cap, counters.chat_queries_this_cycle, renewal)
        if decision.reason is not None:
            return replace(decision, details={"renewalDate": cycles.to_iso(renewal)})
        return decision
