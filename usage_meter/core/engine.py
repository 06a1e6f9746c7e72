"""
Metering engine.

Request path for a billable operation:

    check_entitlement:  load counters -> apply due resets -> cost ceiling
                        -> summary/chat quota -> Decision
    (caller runs the AI completion)
    record_completion:  compute cost -> append ledger entry (best effort)
                        -> increment counters

Storage failures on the gating path fail closed for the cost ceiling and
open for the quota counts; failures after the completion never revoke
the result already delivered to the user.
"""

import logging
from dataclasses import dataclass, replace
from datetime import datetime
from decimal import Decimal
from typing import Optional

from . import cycles
from .ceiling import CostCeilingGuard
from .entitlement import UNLIMITED, Decision, EntitlementPolicy, PlanState
from .errors import AdminRequired, EntitlementDenied, StorageUnavailable
from .pricing import CostCalculator
from .reporting import CostAnalytics, UsageSummary, build_cost_analytics, build_usage_summary
from usage_meter.storage.counters import UsageStore, validate_account_id
from usage_meter.storage.ledger import CostLedger
from usage_meter.storage.models import CostLedgerEntry, OperationKind, UsageCounters

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CompletionReceipt:
    """What record_completion managed to persist."""
    cost: Decimal
    ledger_recorded: bool
    counters_updated: bool

    @property
    def warning(self) -> Optional[str]:
        """Soft warning for the caller when a counter update was lost."""
        if not self.counters_updated:
            return "usage could not be recorded; totals may be understated"
        return None


class MeteringEngine:
    """Entitlement gate and usage recorder for AI-costing operations.

    Collaborators are injected; the engine never chooses a backend itself.
    """

    def __init__(
        self,
        store: UsageStore,
        ledger: CostLedger,
        policy: Optional[EntitlementPolicy] = None,
        ceiling: Optional[CostCeilingGuard] = None,
        calculator: Optional[CostCalculator] = None
    ):
        self.store = store
        self.ledger = ledger
        self.policy = policy or EntitlementPolicy()
        self.ceiling = ceiling or CostCeilingGuard()
        self.calculator = calculator or CostCalculator()

    def _load_with_resets(self, account_id: str, plan: PlanState, now: datetime) -> UsageCounters:
        counters = self.store.load(account_id, now=now, created_at=plan.created_at)
        projected = counters.with_resets_applied(now)
        if projected == counters:
            # Boundaries only move forward, so nothing is due in the store either
            return counters

        try:
            outcome = self.store.apply_due_resets(account_id, now)
        except StorageUnavailable as e:
            # Evaluate as if the resets had been persisted
            logger.warning(f"Could not persist due resets for {account_id}: {e}")
            return projected

        if outcome.any:
            logger.info(
                f"Reset usage for {account_id} "
                f"(daily={outcome.daily}, monthly={outcome.monthly}, cycle={outcome.cycle})"
            )
        # Re-read: a concurrent request may have won the reset and incremented since
        return self.store.load(account_id, now=now, created_at=plan.created_at)

    def check_entitlement(
        self,
        account_id: str,
        operation_kind,
        plan: PlanState,
        now: Optional[datetime] = None
    ) -> Decision:
        """Decide whether an account may run one billable operation.

        Args:
            account_id: Account making the request
            operation_kind: OperationKind (or its string value)
            plan: Plan snapshot from the billing layer
            now: Evaluation time (defaults to current UTC time)

        Returns:
            Decision; ``warning_threshold`` is set when the account is near
            its cost ceiling

        Raises:
            AccountNotFound: If the account id is empty
            StorageUnavailable: If counters cannot be read and the cost
                ceiling therefore cannot be verified
        """
        validate_account_id(account_id)
        kind = OperationKind.parse(operation_kind)
        now = cycles.to_utc(now or cycles.utcnow())

        try:
            counters = self._load_with_resets(account_id, plan, now)
        except StorageUnavailable:
            if plan.is_admin:
                return Decision(allowed=True, remaining=UNLIMITED, limit=UNLIMITED, degraded=True)
            if self.ceiling.enabled:
                logger.error(f"Failing closed for {account_id}: usage counters unavailable")
                raise
            logger.warning(f"Failing open for {account_id}: usage counters unavailable")
            return Decision(allowed=True, remaining=UNLIMITED, limit=UNLIMITED, degraded=True)

        ceiling_decision = self.ceiling.check_ceiling(plan, counters, now)
        if not ceiling_decision.allowed:
            logger.info(f"Cost ceiling reached for {account_id}: ${counters.cost_this_month}")
            return ceiling_decision

        if kind.is_chat:
            decision = self.policy.check_chat(plan, counters, now)
        else:
            decision = self.policy.check_summary(plan, counters, now)

        if not decision.allowed:
            logger.info(f"Quota exceeded for {account_id} ({kind.value}): {decision.used}/{decision.limit}")
        if ceiling_decision.warning_threshold:
            decision = replace(decision, warning_threshold=True)
        return decision

    def require_entitlement(
        self,
        account_id: str,
        operation_kind,
        plan: PlanState,
        now: Optional[datetime] = None
    ) -> Decision:
        """Like check_entitlement, but raises EntitlementDenied on denial."""
        decision = self.check_entitlement(account_id, operation_kind, plan, now)
        if not decision.allowed:
            raise EntitlementDenied(decision)
        return decision

    def record_completion(
        self,
        account_id: str,
        operation_kind,
        model: str,
        input_tokens: int,
        output_tokens: int,
        cached: bool = False,
        now: Optional[datetime] = None
    ) -> CompletionReceipt:
        """Record the cost of a completed billable operation.

        The ledger write is best effort: a failure is logged and never
        reaches the user. A failed counter increment is logged and
        reported as a soft warning on the receipt.

        Args:
            account_id: Account that ran the operation
            operation_kind: OperationKind (or its string value)
            model: Model reported by the provider
            input_tokens: Prompt tokens consumed
            output_tokens: Completion tokens produced
            cached: Whether the result was served from cache
            now: Completion time (defaults to current UTC time)

        Returns:
            CompletionReceipt with the computed cost

        Raises:
            AccountNotFound: If the account id is empty
            ValueError: If token counts are negative or the kind is unknown
        """
        validate_account_id(account_id)
        kind = OperationKind.parse(operation_kind)
        now = cycles.to_utc(now or cycles.utcnow())
        cost = self.calculator.compute(model, input_tokens, output_tokens)

        entry = CostLedgerEntry(
            account_id=account_id,
            operation_kind=kind,
            model=model,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            cost_usd=cost,
            cached=cached,
            timestamp=now,
        )
        ledger_recorded = True
        try:
            self.ledger.append(entry)
        except StorageUnavailable as e:
            ledger_recorded = False
            logger.warning(f"Ledger write failed for {account_id} ({kind.value}, ${cost}): {e}")

        counters_updated = True
        try:
            if kind.is_chat:
                self.store.increment_chat(account_id, cost, now=now)
            else:
                self.store.increment_summary(account_id, cost, now=now)
        except StorageUnavailable as e:
            counters_updated = False
            logger.warning(f"Usage increment failed for {account_id} ({kind.value}, ${cost}): {e}")

        logger.info(f"Cost tracked: ${cost} for {kind.value} (account: {account_id})")
        return CompletionReceipt(cost=cost, ledger_recorded=ledger_recorded, counters_updated=counters_updated)

    def get_usage_summary(
        self,
        account_id: str,
        plan: PlanState,
        now: Optional[datetime] = None
    ) -> UsageSummary:
        """Read-only "my usage" report for one account."""
        validate_account_id(account_id)
        now = cycles.to_utc(now or cycles.utcnow())
        counters = self.store.load(account_id, now=now, created_at=plan.created_at)
        # Report what the next gated request would see
        counters = counters.with_resets_applied(now)
        return build_usage_summary(counters, plan, self.policy, self.ceiling, now)

    def get_cost_analytics(
        self,
        requester: PlanState,
        window_days: int = 30,
        top_limit: int = 10,
        now: Optional[datetime] = None
    ) -> CostAnalytics:
        """Admin-only cost report built from the ledger.

        Raises:
            AdminRequired: If the requester is not an admin
        """
        if not requester.is_admin:
            raise AdminRequired("Cost analytics require admin access")
        if window_days <= 0:
            raise ValueError("window_days must be > 0")
        return build_cost_analytics(self.ledger, window_days, top_limit, now)
