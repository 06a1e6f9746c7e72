"""
Unit tests for billing cycle arithmetic.
"""

from datetime import datetime, timedelta, timezone

from usage_meter.core import cycles


def utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


class TestBoundaries:
    """Test day and month boundaries."""

    def test_start_of_day(self):
        assert cycles.start_of_day(utc(2024, 3, 15, 23, 59, 59)) == utc(2024, 3, 15)

    def test_start_of_month(self):
        assert cycles.start_of_month(utc(2024, 3, 15, 12)) == utc(2024, 3, 1)

    def test_next_month_rolls_year(self):
        """Test December rolls into January of the next year."""
        assert cycles.start_of_next_month(utc(2024, 12, 31, 23)) == utc(2025, 1, 1)

    def test_month_bounds(self):
        assert cycles.month_bounds(2024, 2) == (utc(2024, 2, 1), utc(2024, 3, 1))

    def test_naive_values_are_utc(self):
        """Test naive datetimes are taken as UTC."""
        assert cycles.to_utc(datetime(2024, 1, 1)) == utc(2024, 1, 1)

    def test_offsets_normalized(self):
        """Test aware non-UTC values are converted, not relabelled."""
        plus_two = timezone(timedelta(hours=2))
        assert cycles.start_of_day(datetime(2024, 3, 16, 1, 0, tzinfo=plus_two)) == utc(2024, 3, 15)


class TestResetDue:
    """Test reset predicates."""

    def test_daily_due_after_midnight(self):
        assert cycles.daily_reset_due(utc(2024, 3, 14, 23, 59), utc(2024, 3, 15, 0, 0))

    def test_daily_not_due_same_day(self):
        assert not cycles.daily_reset_due(utc(2024, 3, 15, 0, 0), utc(2024, 3, 15, 23, 59))

    def test_daily_not_due_when_clock_goes_back(self):
        """Test an earlier 'now' never triggers a reset."""
        assert not cycles.daily_reset_due(utc(2024, 3, 16, 1), utc(2024, 3, 15, 12))

    def test_monthly_due_on_first(self):
        assert cycles.monthly_reset_due(utc(2024, 2, 29, 12), utc(2024, 3, 1, 0, 0, 1))

    def test_monthly_not_due_same_month(self):
        assert not cycles.monthly_reset_due(utc(2024, 3, 1), utc(2024, 3, 31, 23))

    def test_cycle_seeded_from_creation(self):
        created = utc(2024, 1, 10, 8)
        assert cycles.seed_cycle_renewal(created) == utc(2024, 2, 9, 8)

    def test_cycle_due_at_renewal(self):
        renewal = utc(2024, 2, 9, 8)
        assert cycles.cycle_reset_due(renewal, renewal)
        assert not cycles.cycle_reset_due(renewal, renewal - timedelta(seconds=1))
        assert not cycles.cycle_reset_due(None, renewal)


class TestIsoFormat:
    """Test the canonical storage format."""

    def test_round_trip(self):
        value = utc(2024, 3, 15, 12, 30, 45, 123456)
        assert cycles.from_iso(cycles.to_iso(value)) == value

    def test_lexicographic_order_matches_time_order(self):
        """Test stored strings sort the same way the instants do."""
        earlier = utc(2024, 3, 15, 9, 0, 0)
        later = utc(2024, 3, 15, 10, 0, 0, 1)
        assert cycles.to_iso(earlier) < cycles.to_iso(later)
