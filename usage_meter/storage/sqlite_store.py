"""
Durable usage counters in SQLite.

Production adapter: survives restarts. Every mutation runs inside a
BEGIN IMMEDIATE transaction and is a single conditional UPDATE, so
concurrent requests for the same account serialize on the database
write lock instead of overwriting each other.
"""

import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from decimal import Decimal
from typing import Optional

from usage_meter.core import cycles
from usage_meter.core.errors import StorageUnavailable
from .counters import UsageStore, validate_account_id, validate_cost_delta
from .db import DEFAULT_DB_PATH, cost_to_micros, get_connection, micros_to_cost
from .models import UsageCounters

logger = logging.getLogger(__name__)

_COLUMNS = """
    account_id, account_created_at, summaries_today, chat_queries_today,
    last_daily_reset, summaries_this_month, chat_queries_this_month,
    cost_this_month_micros, last_monthly_reset, chat_queries_this_cycle,
    cycle_renewal_at
"""


def _row_to_counters(row) -> UsageCounters:
    return UsageCounters(
        account_id=row[0],
        account_created_at=cycles.from_iso(row[1]),
        summaries_today=row[2],
        chat_queries_today=row[3],
        last_daily_reset=cycles.from_iso(row[4]),
        summaries_this_month=row[5],
        chat_queries_this_month=row[6],
        cost_this_month=micros_to_cost(row[7]),
        last_monthly_reset=cycles.from_iso(row[8]),
        chat_queries_this_cycle=row[9],
        cycle_renewal_at=cycles.from_iso(row[10]) if row[10] else None,
    )


class SqliteUsageStore(UsageStore):
    """Usage counters persisted in the usage_counters table."""

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        """Initialize the store with a database path.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path

    def initialize_schema(self) -> None:
        """Create the usage_counters table if it doesn't exist.

        CHECK constraints keep every counter non-negative even if a bad
        write slips past the Python layer.
        """
        conn = get_connection(self.db_path)
        try:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS usage_counters (
                    account_id TEXT PRIMARY KEY,
                    account_created_at TEXT NOT NULL,
                    summaries_today INTEGER NOT NULL DEFAULT 0 CHECK (summaries_today >= 0),
                    chat_queries_today INTEGER NOT NULL DEFAULT 0 CHECK (chat_queries_today >= 0),
                    last_daily_reset TEXT NOT NULL,
                    summaries_this_month INTEGER NOT NULL DEFAULT 0 CHECK (summaries_this_month >= 0),
                    chat_queries_this_month INTEGER NOT NULL DEFAULT 0 CHECK (chat_queries_this_month >= 0),
                    cost_this_month_micros INTEGER NOT NULL DEFAULT 0 CHECK (cost_this_month_micros >= 0),
                    last_monthly_reset TEXT NOT NULL,
                    chat_queries_this_cycle INTEGER NOT NULL DEFAULT 0 CHECK (chat_queries_this_cycle >= 0),
                    cycle_renewal_at TEXT
                )
            """)
            conn.commit()
        except sqlite3.Error as e:
            raise StorageUnavailable(f"Could not create counter schema: {e}", "initialize_schema") from e
        finally:
            conn.close()

    @contextmanager
    def _transaction(self, operation: str):
        conn = get_connection(self.db_path)
        try:
            conn.execute("BEGIN IMMEDIATE")
            yield conn
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            logger.error(f"Usage counter {operation} failed: {e}")
            raise StorageUnavailable(f"Usage counter {operation} failed: {e}", operation) from e
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    @staticmethod
    def _ensure(conn: sqlite3.Connection, account_id: str, now: Optional[datetime],
                created_at: Optional[datetime] = None) -> None:
        fresh = UsageCounters.fresh(account_id, now or cycles.utcnow(), created_at)
        conn.execute("""
            INSERT OR IGNORE INTO usage_counters
            (account_id, account_created_at, last_daily_reset, last_monthly_reset)
            VALUES (?, ?, ?, ?)
        """, (
            account_id,
            cycles.to_iso(fresh.account_created_at),
            cycles.to_iso(fresh.last_daily_reset),
            cycles.to_iso(fresh.last_monthly_reset),
        ))

    def load(
        self,
        account_id: str,
        now: Optional[datetime] = None,
        created_at: Optional[datetime] = None
    ) -> UsageCounters:
        validate_account_id(account_id)
        select = f"SELECT {_COLUMNS} FROM usage_counters WHERE account_id = ?"

        conn = get_connection(self.db_path)
        try:
            row = conn.execute(select, (account_id,)).fetchone()
        except sqlite3.Error as e:
            logger.error(f"Usage counter load failed: {e}")
            raise StorageUnavailable(f"Usage counter load failed: {e}", "load") from e
        finally:
            conn.close()
        if row is not None:
            return _row_to_counters(row)

        with self._transaction("load") as conn:
            self._ensure(conn, account_id, now, created_at)
            row = conn.execute(select, (account_id,)).fetchone()
        logger.debug(f"Created usage counters for {account_id}")
        return _row_to_counters(row)

    def apply_daily_reset_if_due(self, account_id: str, now: datetime) -> bool:
        validate_account_id(account_id)
        with self._transaction("daily reset") as conn:
            self._ensure(conn, account_id, now)
            cursor = conn.execute("""
                UPDATE usage_counters
                SET summaries_today = 0,
                    chat_queries_today = 0,
                    last_daily_reset = ?
                WHERE account_id = ? AND last_daily_reset < ?
            """, (cycles.to_iso(now), account_id, cycles.to_iso(cycles.start_of_day(now))))
            return cursor.rowcount == 1

    def apply_monthly_reset_if_due(self, account_id: str, now: datetime) -> bool:
        validate_account_id(account_id)
        with self._transaction("monthly reset") as conn:
            self._ensure(conn, account_id, now)
            cursor = conn.execute("""
                UPDATE usage_counters
                SET summaries_this_month = 0,
                    chat_queries_this_month = 0,
                    cost_this_month_micros = 0,
                    last_monthly_reset = ?
                WHERE account_id = ? AND last_monthly_reset < ?
            """, (cycles.to_iso(now), account_id, cycles.to_iso(cycles.start_of_month(now))))
            return cursor.rowcount == 1

    def apply_cycle_reset_if_due(self, account_id: str, now: datetime) -> bool:
        validate_account_id(account_id)
        with self._transaction("cycle reset") as conn:
            self._ensure(conn, account_id, now)
            created_at, renewal_at = conn.execute(
                "SELECT account_created_at, cycle_renewal_at FROM usage_counters WHERE account_id = ?",
                (account_id,)
            ).fetchone()
            if renewal_at is None:
                conn.execute("""
                    UPDATE usage_counters SET cycle_renewal_at = ?
                    WHERE account_id = ? AND cycle_renewal_at IS NULL
                """, (
                    cycles.to_iso(cycles.seed_cycle_renewal(cycles.from_iso(created_at))),
                    account_id,
                ))
            cursor = conn.execute("""
                UPDATE usage_counters
                SET chat_queries_this_cycle = 0,
                    cycle_renewal_at = ?
                WHERE account_id = ? AND cycle_renewal_at <= ?
            """, (cycles.to_iso(cycles.next_cycle_renewal(now)), account_id, cycles.to_iso(now)))
            return cursor.rowcount == 1

    def increment_summary(self, account_id: str, cost_delta: Decimal,
                          now: Optional[datetime] = None) -> None:
        validate_account_id(account_id)
        micros = cost_to_micros(validate_cost_delta(cost_delta))
        with self._transaction("summary increment") as conn:
            self._ensure(conn, account_id, now)
            conn.execute("""
                UPDATE usage_counters
                SET summaries_today = summaries_today + 1,
                    summaries_this_month = summaries_this_month + 1,
                    cost_this_month_micros = cost_this_month_micros + ?
                WHERE account_id = ?
            """, (micros, account_id))

    def increment_chat(self, account_id: str, cost_delta: Decimal,
                       now: Optional[datetime] = None) -> None:
        validate_account_id(account_id)
        micros = cost_to_micros(validate_cost_delta(cost_delta))
        with self._transaction("chat increment") as conn:
            self._ensure(conn, account_id, now)
            conn.execute("""
                UPDATE usage_counters
                SET chat_queries_today = chat_queries_today + 1,
                    chat_queries_this_month = chat_queries_this_month + 1,
                    chat_queries_this_cycle = chat_queries_this_cycle + 1,
                    cost_this_month_micros = cost_this_month_micros + ?
                WHERE account_id = ?
            """, (micros, account_id))
