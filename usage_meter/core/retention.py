"""
Ledger retention.

Old, cheap ledger entries are deleted periodically; expensive entries
are kept indefinitely for auditing.
"""

import logging
import threading
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Optional

from . import cycles
from usage_meter.storage.ledger import CostLedger

logger = logging.getLogger(__name__)

MAX_AGE_DAYS = 365
MAX_COST_THRESHOLD = Decimal("0.001")
INTERVAL_HOURS = 24


class RetentionJob:
    """Runs ``CostLedger.delete_older_than`` on a fixed interval."""

    def __init__(
        self,
        ledger: CostLedger,
        max_age_days: int = MAX_AGE_DAYS,
        max_cost_threshold: Decimal = MAX_COST_THRESHOLD,
        interval_hours: float = INTERVAL_HOURS
    ):
        if max_age_days <= 0:
            raise ValueError("max_age_days must be > 0")
        if Decimal(max_cost_threshold) < 0:
            raise ValueError("max_cost_threshold cannot be negative")
        if interval_hours <= 0:
            raise ValueError("interval_hours must be > 0")
        self.ledger = ledger
        self.max_age_days = max_age_days
        self.max_cost_threshold = Decimal(max_cost_threshold)
        self.interval_hours = interval_hours

    def cutoff(self, now: Optional[datetime] = None) -> datetime:
        now = cycles.to_utc(now or cycles.utcnow())
        return now - timedelta(days=self.max_age_days)

    def run_once(self, now: Optional[datetime] = None) -> int:
        """Delete eligible entries once.

        Returns:
            Number of ledger entries deleted
        """
        cutoff = self.cutoff(now)
        deleted = self.ledger.delete_older_than(cutoff, self.max_cost_threshold)
        logger.info(
            f"Retention removed {deleted} ledger entries older than "
            f"{cycles.to_iso(cutoff)} under ${self.max_cost_threshold}"
        )
        return deleted

    def run_forever(self, stop_event: threading.Event) -> None:
        """Run passes until ``stop_event`` is set.

        A failed pass is logged and retried on the next interval.
        """
        interval = self.interval_hours * 3600
        while not stop_event.is_set():
            try:
                self.run_once()
            except Exception as e:
                logger.error(f"Retention pass failed: {e}")
            stop_event.wait(interval)
