"""
Usage counter store contract.

Every adapter (durable SQLite, in-memory development store, DynamoDB)
implements this contract with the same reset semantics. Callers depend
only on UsageStore and never branch on which adapter is active.

Adapter rules:
- Loading an unknown account creates zeroed counters ("create on first read").
- Increments are atomic at the storage layer; no adapter reads counters
  into memory, adds, and writes them back unguarded.
- Resets are conditional on the stored boundary, so applying a due reset
  twice in a row is a no-op the second time.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Optional

from usage_meter.core.errors import AccountNotFound
from .models import UsageCounters


@dataclass(frozen=True)
class ResetOutcome:
    """Which resets were performed by one apply_due_resets call."""
    daily: bool = False
    monthly: bool = False
    cycle: bool = False

    @property
    def any(self) -> bool:
        return self.daily or self.monthly or self.cycle


def validate_account_id(account_id) -> str:
    """Reject ids the identity layer could not have resolved."""
    if not isinstance(account_id, str) or not account_id.strip():
        raise AccountNotFound(account_id)
    return account_id


def validate_cost_delta(cost_delta) -> Decimal:
    cost_delta = Decimal(cost_delta)
    if cost_delta < 0:
        raise ValueError("cost_delta cannot be negative")
    return cost_delta


class UsageStore(ABC):
    """Per-account usage counters with daily, monthly and rolling-cycle resets."""

    @abstractmethod
    def load(
        self,
        account_id: str,
        now: Optional[datetime] = None,
        created_at: Optional[datetime] = None
    ) -> UsageCounters:
        """Return the account's counters, creating zeroed ones if absent.

        Args:
            account_id: Account to load
            now: Reset timestamps for a newly created record
            created_at: Account creation time, anchors the first chat cycle

        Raises:
            AccountNotFound: If the account id is empty
            StorageUnavailable: If the backend cannot be reached
        """

    @abstractmethod
    def apply_daily_reset_if_due(self, account_id: str, now: datetime) -> bool:
        """Zero the *_today counters if ``now`` is on a later UTC day.

        Returns:
            True if this call performed the reset
        """

    @abstractmethod
    def apply_monthly_reset_if_due(self, account_id: str, now: datetime) -> bool:
        """Zero the *_this_month counters and monthly cost if ``now`` is in a later month.

        Returns:
            True if this call performed the reset
        """

    @abstractmethod
    def apply_cycle_reset_if_due(self, account_id: str, now: datetime) -> bool:
        """Zero chat_queries_this_cycle once the rolling cycle has renewed.

        Seeds an unset renewal time from account creation + 30 days first.

        Returns:
            True if this call performed the reset
        """

    @abstractmethod
    def increment_summary(self, account_id: str, cost_delta: Decimal,
                          now: Optional[datetime] = None) -> None:
        """Atomically count one summary and add its cost."""

    @abstractmethod
    def increment_chat(self, account_id: str, cost_delta: Decimal,
                       now: Optional[datetime] = None) -> None:
        """Atomically count one chat query and add its cost."""

    def apply_due_resets(self, account_id: str, now: datetime) -> ResetOutcome:
        """Apply the daily, monthly and cycle resets in that order."""
        return ResetOutcome(
            daily=self.apply_daily_reset_if_due(account_id, now),
            monthly=self.apply_monthly_reset_if_due(account_id, now),
            cycle=self.apply_cycle_reset_if_due(account_id, now),
        )
