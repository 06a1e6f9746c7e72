"""
Unit tests for the ledger retention job.
"""

import threading
from datetime import timedelta
from decimal import Decimal
from unittest.mock import MagicMock

import pytest

from usage_meter.core.errors import StorageUnavailable
from usage_meter.core.retention import RetentionJob
from usage_meter.storage.ledger import InMemoryCostLedger
from usage_meter.storage.models import CostLedgerEntry, OperationKind

from .conftest import NOW


def entry(cost: str, days_ago: int) -> CostLedgerEntry:
    return CostLedgerEntry(
        account_id="acct-1",
        operation_kind=OperationKind.SUMMARY_CACHED,
        model="gpt-4o-mini",
        input_tokens=10,
        output_tokens=0,
        cost_usd=Decimal(cost),
        cached=True,
        timestamp=NOW - timedelta(days=days_ago),
    )


class TestRetentionJob:
    """Test retention passes."""

    def test_defaults_keep_a_year(self):
        ledger = InMemoryCostLedger()
        ledger.append(entry("0.0001", days_ago=366))
        ledger.append(entry("0.0001", days_ago=364))
        ledger.append(entry("0.01", days_ago=500))

        deleted = RetentionJob(ledger).run_once(NOW)

        assert deleted == 1
        assert len(ledger.entries("acct-1")) == 2

    def test_cutoff(self):
        job = RetentionJob(InMemoryCostLedger(), max_age_days=30)
        assert job.cutoff(NOW) == NOW - timedelta(days=30)

    def test_passes_threshold_to_ledger(self):
        ledger = MagicMock()
        ledger.delete_older_than.return_value = 7
        job = RetentionJob(ledger, max_age_days=10, max_cost_threshold=Decimal("0.05"))

        assert job.run_once(NOW) == 7
        ledger.delete_older_than.assert_called_once_with(NOW - timedelta(days=10), Decimal("0.05"))

    def test_invalid_settings(self):
        with pytest.raises(ValueError):
            RetentionJob(InMemoryCostLedger(), max_age_days=0)
        with pytest.raises(ValueError):
            RetentionJob(InMemoryCostLedger(), max_cost_threshold=Decimal("-1"))

    def test_run_forever_survives_failed_pass(self):
        """Test a failing pass is logged and the loop keeps going until stopped."""
        ledger = MagicMock()
        stop = threading.Event()
        calls = []

        def delete(cutoff, threshold):
            calls.append(cutoff)
            if len(calls) == 1:
                raise StorageUnavailable("down", "delete_older_than")
            stop.set()
            return 0

        ledger.delete_older_than.side_effect = delete
        job = RetentionJob(ledger, interval_hours=0.000001)
        job.run_forever(stop)

        assert len(calls) == 2
