"""
In-memory usage counters for local development.

Lives only as long as the process. Never selected for a production
environment (see storage.factory).
"""

import logging
import threading
from dataclasses import replace
from datetime import datetime
from decimal import Decimal
from typing import Dict, Optional

from usage_meter.core import cycles
from .counters import UsageStore, validate_account_id, validate_cost_delta
from .models import UsageCounters

logger = logging.getLogger(__name__)


class InMemoryUsageStore(UsageStore):
    """Dictionary-backed store; one lock makes every mutation atomic."""

    def __init__(self):
        self._records: Dict[str, UsageCounters] = {}
        self._lock = threading.Lock()

    def _get_or_create(self, account_id: str, now: Optional[datetime],
                       created_at: Optional[datetime] = None) -> UsageCounters:
        # Caller holds the lock
        record = self._records.get(account_id)
        if record is None:
            record = UsageCounters.fresh(account_id, now or cycles.utcnow(), created_at)
            self._records[account_id] = record
            logger.debug(f"Created usage counters for {account_id}")
        return record

    def load(
        self,
        account_id: str,
        now: Optional[datetime] = None,
        created_at: Optional[datetime] = None
    ) -> UsageCounters:
        validate_account_id(account_id)
        with self._lock:
            return self._get_or_create(account_id, now, created_at)

    def apply_daily_reset_if_due(self, account_id: str, now: datetime) -> bool:
        validate_account_id(account_id)
        with self._lock:
            record = self._get_or_create(account_id, now)
            if not cycles.daily_reset_due(record.last_daily_reset, now):
                return False
            self._records[account_id] = replace(
                record,
                summaries_today=0,
                chat_queries_today=0,
                last_daily_reset=cycles.to_utc(now),
            )
            return True

    def apply_monthly_reset_if_due(self, account_id: str, now: datetime) -> bool:
        validate_account_id(account_id)
        with self._lock:
            record = self._get_or_create(account_id, now)
            if not cycles.monthly_reset_due(record.last_monthly_reset, now):
                return False
            self._records[account_id] = replace(
                record,
                summaries_this_month=0,
                chat_queries_this_month=0,
                cost_this_month=Decimal("0"),
                last_monthly_reset=cycles.to_utc(now),
            )
            return True

    def apply_cycle_reset_if_due(self, account_id: str, now: datetime) -> bool:
        validate_account_id(account_id)
        with self._lock:
            record = self._get_or_create(account_id, now)
            if record.cycle_renewal_at is None:
                record = replace(
                    record,
                    cycle_renewal_at=cycles.seed_cycle_renewal(record.account_created_at),
                )
                self._records[account_id] = record
            if not cycles.cycle_reset_due(record.cycle_renewal_at, now):
                return False
            self._records[account_id] = replace(
                record,
                chat_queries_this_cycle=0,
                cycle_renewal_at=cycles.next_cycle_renewal(now),
            )
            return True

    def increment_summary(self, account_id: str, cost_delta: Decimal,
                          now: Optional[datetime] = None) -> None:
        validate_account_id(account_id)
        cost_delta = validate_cost_delta(cost_delta)
        with self._lock:
            record = self._get_or_create(account_id, now)
            self._records[account_id] = replace(
                record,
                summaries_today=record.summaries_today + 1,
                summaries_this_month=record.summaries_this_month + 1,
                cost_this_month=record.cost_this_month + cost_delta,
            )

    def increment_chat(self, account_id: str, cost_delta: Decimal,
                       now: Optional[datetime] = None) -> None:
        validate_account_id(account_id)
        cost_delta = validate_cost_delta(cost_delta)
        with self._lock:
            record = self._get_or_create(account_id, now)
            self._records[account_id] = replace(
                record,
                chat_queries_today=record.chat_queries_today + 1,
                chat_queries_this_month=record.chat_queries_this_month + 1,
                chat_queries_this_cycle=record.chat_queries_this_cycle + 1,
                cost_this_month=record.cost_this_month + cost_delta,
            )

    def clear(self) -> None:
        """Drop every record."""
        with self._lock:
            self._records.clear()
