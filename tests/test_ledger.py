"""
Unit tests for the cost ledger backends.

Tests appends, time-ranged aggregation and retention deletes against
both the SQLite and in-memory ledgers.
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from usage_meter.core.errors import StorageUnavailable
from usage_meter.storage.db import get_connection
from usage_meter.storage.ledger import SqliteCostLedger
from usage_meter.storage.models import CostLedgerEntry, OperationKind

from .conftest import NOW


def entry(account_id="acct-1", kind=OperationKind.SUMMARY_GENERATED, cost="0.001",
          model="gpt-4o-mini", cached=False, timestamp=NOW, input_tokens=100, output_tokens=50):
    return CostLedgerEntry(
        account_id=account_id,
        operation_kind=kind,
        model=model,
        input_tokens=input_tokens,
        output_tokens=output_tokens,
        cost_usd=Decimal(cost),
        cached=cached,
        timestamp=timestamp,
    )


class TestCostLedgerEntry:
    """Test entry validation."""

    def test_negative_cost_rejected(self):
        with pytest.raises(ValueError, match="cost_usd"):
            entry(cost="-0.01")

    def test_negative_tokens_rejected(self):
        with pytest.raises(ValueError, match="token"):
            entry(input_tokens=-1)

    def test_unknown_kind_rejected(self):
        with pytest.raises(ValueError, match="Unknown operation kind"):
            OperationKind.parse("image_generated")


class TestLedgerAggregation:
    """Test sums and breakdowns on every backend."""

    def test_sum_cost_half_open_range(self, cost_ledger):
        """Test [start, end): the end instant is excluded."""
        cost_ledger.append(entry(cost="0.25", timestamp=NOW))
        cost_ledger.append(entry(cost="0.50", timestamp=NOW + timedelta(hours=1)))
        cost_ledger.append(entry(account_id="other", cost="9", timestamp=NOW))

        assert cost_ledger.sum_cost("acct-1", NOW, NOW + timedelta(hours=1)) == Decimal("0.25")
        assert cost_ledger.sum_cost("acct-1", NOW, NOW + timedelta(hours=2)) == Decimal("0.75")

    def test_sum_cost_empty(self, cost_ledger):
        assert cost_ledger.sum_cost("nobody", NOW, NOW + timedelta(days=1)) == Decimal("0")

    def test_sum_is_exact(self, cost_ledger):
        """Test many micro-dollar entries sum without float drift."""
        for _ in range(250):
            cost_ledger.append(entry(cost="0.000001"))
        assert cost_ledger.sum_cost("acct-1", NOW, NOW + timedelta(seconds=1)) == Decimal("0.00025")

    def test_monthly_cost(self, cost_ledger):
        cost_ledger.append(entry(cost="1", timestamp=datetime(2024, 2, 29, 23, 59, tzinfo=timezone.utc)))
        cost_ledger.append(entry(cost="2", timestamp=datetime(2024, 3, 1, tzinfo=timezone.utc)))
        assert cost_ledger.monthly_cost("acct-1", 2024, 3) == Decimal("2")
        assert cost_ledger.monthly_cost("acct-1", 2024, 2) == Decimal("1")

    def test_aggregate_by_kind(self, cost_ledger):
        cost_ledger.append(entry(kind=OperationKind.SUMMARY_GENERATED, cost="0.01"))
        cost_ledger.append(entry(kind=OperationKind.SUMMARY_CACHED, cost="0", cached=True))
        cost_ledger.append(entry(kind=OperationKind.CHAT_QUERY, cost="0.02"))
        cost_ledger.append(entry(kind=OperationKind.CHAT_QUERY, cost="0.03", account_id="other"))

        everyone = cost_ledger.aggregate_by_kind(None, NOW, NOW + timedelta(seconds=1))
        assert everyone[OperationKind.CHAT_QUERY].count == 2
        assert everyone[OperationKind.CHAT_QUERY].total_cost == Decimal("0.05")
        assert everyone[OperationKind.SUMMARY_CACHED].cached_count == 1

        mine = cost_ledger.aggregate_by_kind("acct-1", NOW, NOW + timedelta(seconds=1))
        assert mine[OperationKind.CHAT_QUERY].count == 1
        assert mine[OperationKind.SUMMARY_GENERATED].total_tokens == 150

    def test_aggregate_by_model(self, cost_ledger):
        cost_ledger.append(entry(model="gpt-4o", cost="0.5"))
        cost_ledger.append(entry(model="gpt-4o-mini", cost="0.1"))
        cost_ledger.append(entry(model="gpt-4o-mini", cost="0.1"))

        rows = cost_ledger.aggregate_by_model(NOW, NOW + timedelta(seconds=1))
        assert [r.model for r in rows] == ["gpt-4o", "gpt-4o-mini"]
        assert rows[1].count == 2
        assert rows[1].total_cost == Decimal("0.2")
        assert rows[1].input_tokens == 200

    def test_top_spenders(self, cost_ledger):
        cost_ledger.append(entry(account_id="small", cost="0.1"))
        cost_ledger.append(entry(account_id="big", cost="1"))
        cost_ledger.append(entry(account_id="big", cost="0", cached=True))
        cost_ledger.append(entry(account_id="medium", cost="0.5"))

        top = cost_ledger.top_spenders(NOW, NOW + timedelta(seconds=1), limit=2)
        assert [row.account_id for row in top] == ["big", "medium"]
        assert top[0].total_operations == 2
        assert top[0].cache_hit_rate == 50.0

    def test_top_spenders_in_window(self, cost_ledger):
        cost_ledger.append(entry(account_id="old", cost="5", timestamp=NOW - timedelta(days=40)))
        cost_ledger.append(entry(account_id="recent", cost="1", timestamp=NOW))
        top = cost_ledger.top_spenders_in_window(limit=10, window_days=30, now=NOW)
        assert [row.account_id for row in top] == ["recent"]

    def test_daily_costs(self, cost_ledger):
        day_one = datetime(2024, 3, 14, 10, tzinfo=timezone.utc)
        day_two = datetime(2024, 3, 15, 10, tzinfo=timezone.utc)
        cost_ledger.append(entry(account_id="a", cost="0.1", timestamp=day_one))
        cost_ledger.append(entry(account_id="b", cost="0.2", timestamp=day_one))
        cost_ledger.append(entry(account_id="a", cost="0.3", timestamp=day_two))

        rows = cost_ledger.daily_costs(day_one - timedelta(days=1), day_two + timedelta(days=1))
        assert [r.day for r in rows] == ["2024-03-14", "2024-03-15"]
        assert rows[0].cost == Decimal("0.3")
        assert rows[0].unique_accounts == 2
        assert rows[1].operations == 1

    def test_entries_newest_first(self, cost_ledger):
        for hours in range(3):
            cost_ledger.append(entry(cost=str(hours), timestamp=NOW + timedelta(hours=hours)))
        rows = cost_ledger.entries("acct-1", limit=2)
        assert [r.cost_usd for r in rows] == [Decimal("2"), Decimal("1")]
        assert rows[0].timestamp == NOW + timedelta(hours=2)


class TestRetentionDelete:
    """Test delete_older_than on every backend."""

    def test_deletes_only_old_cheap_entries(self, cost_ledger):
        old = NOW - timedelta(days=400)
        cost_ledger.append(entry(cost="0.0005", timestamp=old))
        cost_ledger.append(entry(cost="0.5", timestamp=old))
        cost_ledger.append(entry(cost="0.0005", timestamp=NOW))

        deleted = cost_ledger.delete_older_than(NOW - timedelta(days=365), Decimal("0.001"))

        assert deleted == 1
        remaining = cost_ledger.entries("acct-1")
        assert sorted(r.cost_usd for r in remaining) == [Decimal("0.0005"), Decimal("0.5")]


class TestSqliteLedger:
    """SQLite-specific behavior."""

    def test_schema_creates_indexes(self, db_path):
        ledger = SqliteCostLedger(db_path)
        ledger.initialize_schema()
        conn = get_connection(db_path)
        try:
            names = {row[0] for row in conn.execute(
                "SELECT name FROM sqlite_master WHERE type='index' AND tbl_name='cost_ledger'"
            )}
        finally:
            conn.close()
        assert {"idx_cost_ledger_account_time", "idx_cost_ledger_time"} <= names

    def test_missing_schema_is_storage_unavailable(self, db_path):
        """Test sqlite errors surface as StorageUnavailable."""
        ledger = SqliteCostLedger(db_path)
        with pytest.raises(StorageUnavailable):
            ledger.append(entry())
