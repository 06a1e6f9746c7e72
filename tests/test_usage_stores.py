"""
Contract tests for usage counter stores.

Every adapter (memory, sqlite, dynamodb) must behave identically: create on first
read, idempotent resets, monotonic reset boundaries and atomic increments.
"""

import sqlite3
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from usage_meter.core import cycles
from usage_meter.core.errors import AccountNotFound, StorageUnavailable
from usage_meter.storage.db import get_connection
from usage_meter.storage.sqlite_store import SqliteUsageStore

from .conftest import NOW


class TestLoad:
    """Test create-on-first-read."""

    def test_unknown_account_gets_zeroed_counters(self, usage_store):
        counters = usage_store.load("acct-1", now=NOW)
        assert counters.account_id == "acct-1"
        assert counters.summaries_today == 0
        assert counters.chat_queries_this_cycle == 0
        assert counters.cost_this_month == Decimal("0")
        assert counters.last_daily_reset == NOW
        assert counters.last_monthly_reset == NOW

    def test_created_at_recorded(self, usage_store):
        created = NOW - timedelta(days=3)
        counters = usage_store.load("acct-1", now=NOW, created_at=created)
        assert counters.account_created_at == created

    def test_load_is_stable(self, usage_store):
        """Test a second load returns the stored record, not a new one."""
        usage_store.load("acct-1", now=NOW)
        later = usage_store.load("acct-1", now=NOW + timedelta(hours=1))
        assert later.last_daily_reset == NOW

    @pytest.mark.parametrize("account_id", ["", "   ", None])
    def test_blank_account_rejected(self, usage_store, account_id):
        with pytest.raises(AccountNotFound):
            usage_store.load(account_id, now=NOW)


class TestIncrements:
    """Test counter increments."""

    def test_increment_summary(self, usage_store):
        usage_store.load("acct-1", now=NOW)
        usage_store.increment_summary("acct-1", Decimal("0.000450"), now=NOW)
        usage_store.increment_summary("acct-1", Decimal("0.000050"), now=NOW)

        counters = usage_store.load("acct-1", now=NOW)
        assert counters.summaries_today == 2
        assert counters.summaries_this_month == 2
        assert counters.chat_queries_this_cycle == 0
        assert counters.cost_this_month == Decimal("0.0005")

    def test_increment_chat(self, usage_store):
        usage_store.load("acct-1", now=NOW)
        usage_store.increment_chat("acct-1", Decimal("0.001"), now=NOW)

        counters = usage_store.load("acct-1", now=NOW)
        assert counters.chat_queries_today == 1
        assert counters.chat_queries_this_month == 1
        assert counters.chat_queries_this_cycle == 1
        assert counters.summaries_today == 0
        assert counters.cost_this_month == Decimal("0.001")

    def test_increment_creates_missing_account(self, usage_store):
        usage_store.increment_summary("new-acct", Decimal("0.01"), now=NOW)
        assert usage_store.load("new-acct", now=NOW).summaries_today == 1

    def test_negative_cost_rejected(self, usage_store):
        with pytest.raises(ValueError, match="negative"):
            usage_store.increment_chat("acct-1", Decimal("-0.01"), now=NOW)


class TestDailyReset:
    """Test the UTC calendar-day reset."""

    def test_not_due_same_day(self, usage_store):
        usage_store.load("acct-1", now=NOW)
        usage_store.increment_summary("acct-1", Decimal("0.01"), now=NOW)
        assert not usage_store.apply_daily_reset_if_due("acct-1", NOW + timedelta(hours=11))
        assert usage_store.load("acct-1").summaries_today == 1

    def test_reset_after_midnight(self, usage_store):
        usage_store.load("acct-1", now=NOW)
        usage_store.increment_summary("acct-1", Decimal("0.01"), now=NOW)
        usage_store.increment_chat("acct-1", Decimal("0.01"), now=NOW)
        tomorrow = cycles.start_of_next_day(NOW)

        assert usage_store.apply_daily_reset_if_due("acct-1", tomorrow)

        counters = usage_store.load("acct-1")
        assert counters.summaries_today == 0
        assert counters.chat_queries_today == 0
        assert counters.summaries_this_month == 1
        assert counters.chat_queries_this_cycle == 1
        assert counters.last_daily_reset == tomorrow

    def test_reset_is_idempotent(self, usage_store):
        """Test applying the same due reset twice only resets once."""
        usage_store.load("acct-1", now=NOW)
        tomorrow = NOW + timedelta(days=1)
        assert usage_store.apply_daily_reset_if_due("acct-1", tomorrow)
        usage_store.increment_summary("acct-1", Decimal("0.01"), now=tomorrow)
        assert not usage_store.apply_daily_reset_if_due("acct-1", tomorrow)
        assert usage_store.load("acct-1").summaries_today == 1

    def test_reset_boundary_never_moves_backwards(self, usage_store):
        usage_store.load("acct-1", now=NOW)
        usage_store.apply_daily_reset_if_due("acct-1", NOW + timedelta(days=2))
        assert not usage_store.apply_daily_reset_if_due("acct-1", NOW + timedelta(days=1))
        assert usage_store.load("acct-1").last_daily_reset == NOW + timedelta(days=2)


class TestMonthlyReset:
    """Test the UTC calendar-month reset."""

    def test_reset_on_first_of_month(self, usage_store):
        usage_store.load("acct-1", now=NOW)
        usage_store.increment_summary("acct-1", Decimal("1.25"), now=NOW)
        usage_store.increment_chat("acct-1", Decimal("0.25"), now=NOW)
        next_month = cycles.start_of_next_month(NOW)

        assert not usage_store.apply_monthly_reset_if_due("acct-1", next_month - timedelta(microseconds=1))
        assert usage_store.apply_monthly_reset_if_due("acct-1", next_month)

        counters = usage_store.load("acct-1")
        assert counters.summaries_this_month == 0
        assert counters.chat_queries_this_month == 0
        assert counters.cost_this_month == Decimal("0")
        assert counters.last_monthly_reset == next_month
        # Rolling cycle is independent of the calendar month
        assert counters.chat_queries_this_cycle == 1

    def test_reset_across_year_boundary(self, usage_store):
        december = datetime(2024, 12, 31, 23, 0, tzinfo=timezone.utc)
        usage_store.load("acct-1", now=december)
        usage_store.increment_summary("acct-1", Decimal("0.5"), now=december)
        assert usage_store.apply_monthly_reset_if_due("acct-1", datetime(2025, 1, 1, tzinfo=timezone.utc))
        assert usage_store.load("acct-1").cost_this_month == Decimal("0")


class TestCycleReset:
    """Test the rolling 30-day chat cycle."""

    def test_first_renewal_seeded_from_creation(self, usage_store):
        created = NOW - timedelta(days=10)
        usage_store.load("acct-1", now=NOW, created_at=created)

        assert not usage_store.apply_cycle_reset_if_due("acct-1", NOW)
        assert usage_store.load("acct-1").cycle_renewal_at == created + timedelta(days=30)

    def test_reset_at_renewal(self, usage_store):
        created = NOW - timedelta(days=10)
        usage_store.load("acct-1", now=NOW, created_at=created)
        usage_store.increment_chat("acct-1", Decimal("0.001"), now=NOW)
        renewal = created + timedelta(days=30)

        assert not usage_store.apply_cycle_reset_if_due("acct-1", renewal - timedelta(seconds=1))
        assert usage_store.apply_cycle_reset_if_due("acct-1", renewal)

        counters = usage_store.load("acct-1")
        assert counters.chat_queries_this_cycle == 0
        assert counters.cycle_renewal_at == renewal + timedelta(days=30)
        # Calendar counters untouched
        assert counters.chat_queries_this_month == 1

    def test_late_renewal_restarts_from_now(self, usage_store):
        """Test an account idle past several cycles renews from the reset time."""
        created = NOW - timedelta(days=100)
        usage_store.load("acct-1", now=NOW, created_at=created)
        assert usage_store.apply_cycle_reset_if_due("acct-1", NOW)
        assert usage_store.load("acct-1").cycle_renewal_at == NOW + timedelta(days=30)
        assert not usage_store.apply_cycle_reset_if_due("acct-1", NOW + timedelta(days=29))

    def test_apply_due_resets(self, usage_store):
        created = NOW - timedelta(days=45)
        usage_store.load("acct-1", now=NOW - timedelta(days=45), created_at=created)
        outcome = usage_store.apply_due_resets("acct-1", NOW)
        assert outcome.daily and outcome.monthly and outcome.cycle
        assert outcome.any
        assert not usage_store.apply_due_resets("acct-1", NOW).any

    @pytest.mark.parametrize("reset", ["daily", "monthly", "cycle"])
    def test_reset_creates_missing_account(self, usage_store, reset):
        """Test a reset on an unseen account creates it and reports no reset."""
        apply = getattr(usage_store, f"apply_{reset}_reset_if_due")

        assert not apply("acct-new", NOW)

        counters = usage_store.load("acct-new")
        assert counters.account_created_at == NOW
        assert counters.summaries_today == 0
        assert counters.chat_queries_this_cycle == 0


class TestSqliteStore:
    """SQLite-specific behavior."""

    def test_counters_survive_new_store_instance(self, db_path):
        """Test counters persist across process restarts."""
        store = SqliteUsageStore(db_path)
        store.initialize_schema()
        store.increment_chat("acct-1", Decimal("0.002"), now=NOW)

        reopened = SqliteUsageStore(db_path)
        counters = reopened.load("acct-1")
        assert counters.chat_queries_this_cycle == 1
        assert counters.cost_this_month == Decimal("0.002")

    def test_negative_counters_rejected_by_schema(self, db_path):
        store = SqliteUsageStore(db_path)
        store.initialize_schema()
        store.load("acct-1", now=NOW)
        conn = get_connection(db_path)
        try:
            with pytest.raises(sqlite3.IntegrityError):
                conn.execute("UPDATE usage_counters SET summaries_today = -1")
        finally:
            conn.close()

    def test_missing_schema_is_storage_unavailable(self, db_path):
        with pytest.raises(StorageUnavailable):
            SqliteUsageStore(db_path).load("acct-1", now=NOW)
