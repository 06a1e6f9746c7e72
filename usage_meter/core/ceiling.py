"""
Monthly cost ceiling.

Per-account dollar limit on AI spend, independent of operation-count
quotas. Runs before any quota check.

Enforcement Order:
1. Admins bypass the ceiling entirely
2. costThisMonth >= ceiling - request is refused until the next month
3. costThisMonth >= warning ratio * ceiling - request allowed, warning flagged
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Optional

from . import cycles
from .entitlement import UNLIMITED, Decision, DenialReason, PlanState
from usage_meter.storage.models import UsageCounters

MAX_MONTHLY_COST = Decimal("2.50")
WARNING_RATIO = Decimal("0.8")


@dataclass(frozen=True)
class CeilingStatus:
    """Where an account stands against the ceiling, for reporting."""
    limit: Optional[Decimal]
    used: Decimal
    remaining: Optional[Decimal]
    percentage_used: float


class CostCeilingGuard:
    """Denies requests once an account's monthly cost reaches the ceiling.

    A ``max_monthly_cost`` of None disables the ceiling.
    """

    def __init__(
        self,
        max_monthly_cost: Optional[Decimal] = MAX_MONTHLY_COST,
        warning_ratio: Decimal = WARNING_RATIO
    ):
        if max_monthly_cost is not None and Decimal(max_monthly_cost) <= 0:
            raise ValueError("max_monthly_cost must be > 0")
        if not Decimal("0") < Decimal(warning_ratio) <= Decimal("1"):
            raise ValueError("warning_ratio must be in (0, 1]")
        self.max_monthly_cost = Decimal(max_monthly_cost) if max_monthly_cost is not None else None
        self.warning_ratio = Decimal(warning_ratio)

    @property
    def enabled(self) -> bool:
        return self.max_monthly_cost is not None

    @property
    def warning_threshold(self) -> Optional[Decimal]:
        if self.max_monthly_cost is None:
            return None
        return self.max_monthly_cost * self.warning_ratio

    def status(self, counters: UsageCounters) -> CeilingStatus:
        used = counters.cost_this_month
        if self.max_monthly_cost is None:
            return CeilingStatus(limit=None, used=used, remaining=None, percentage_used=0.0)
        remaining = max(Decimal("0"), self.max_monthly_cost - used)
        percentage = float(used / self.max_monthly_cost * 100)
        return CeilingStatus(
            limit=self.max_monthly_cost,
            used=used,
            remaining=remaining,
            percentage_used=round(percentage, 1),
        )

    def check_ceiling(self, plan: PlanState, counters: UsageCounters,
                      now: Optional[datetime] = None) -> Decision:
        """Check the account's month-to-date cost against the ceiling.

        Args:
            plan: Plan snapshot (admins bypass)
            counters: Counters with the monthly reset already applied
            now: Evaluation time

        Returns:
            Decision with dollar-valued limit/used/remaining; denied
            decisions carry the first of next month as resets_at
        """
        used = counters.cost_this_month
        if plan.is_admin or self.max_monthly_cost is None:
            return Decision(allowed=True, remaining=Decimal(UNLIMITED), limit=Decimal(UNLIMITED), used=used)

        now = now or cycles.utcnow()
        remaining = max(Decimal("0"), self.max_monthly_cost - used)
        if used >= self.max_monthly_cost:
            return Decision(
                allowed=False,
                remaining=remaining,
                limit=self.max_monthly_cost,
                used=used,
                reason=DenialReason.COST_CEILING_EXCEEDED,
                resets_at=cycles.start_of_next_month(now),
                warning_threshold=True,
            )

        return Decision(
            allowed=True,
            remaining=remaining,
            limit=self.max_monthly_cost,
            used=used,
            warning_threshold=used >= self.warning_threshold,
        )
