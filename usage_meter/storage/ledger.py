"""
Append-only cost ledger.

One immutable entry per billable operation, with time-ranged aggregation
for reconciliation and reporting. Ranges are half-open: [start, end).
"""

import logging
import sqlite3
import threading
from abc import ABC, abstractmethod
from collections import defaultdict
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Dict, List, Optional

from usage_meter.core import cycles
from usage_meter.core.errors import StorageUnavailable
from .db import DEFAULT_DB_PATH, cost_to_micros, get_connection, micros_to_cost
from .models import (
    CostLedgerEntry,
    DailyCost,
    KindAggregate,
    ModelAggregate,
    OperationKind,
    SpenderSummary,
)

logger = logging.getLogger(__name__)


class CostLedger(ABC):
    """Contract shared by every ledger backend."""

    @abstractmethod
    def append(self, entry: CostLedgerEntry) -> None:
        """Insert one entry atomically."""

    @abstractmethod
    def sum_cost(self, account_id: str, start: datetime, end: datetime) -> Decimal:
        """Total cost for an account in [start, end)."""

    @abstractmethod
    def aggregate_by_kind(
        self,
        account_id: Optional[str],
        start: datetime,
        end: datetime
    ) -> Dict[OperationKind, KindAggregate]:
        """Per-kind totals for one account, or for everyone if account_id is None."""

    @abstractmethod
    def aggregate_by_model(self, start: datetime, end: datetime) -> List[ModelAggregate]:
        """Per-model totals across all accounts, most expensive first."""

    @abstractmethod
    def top_spenders(self, start: datetime, end: datetime, limit: int = 10) -> List[SpenderSummary]:
        """Accounts ordered by total cost in [start, end), highest first."""

    @abstractmethod
    def daily_costs(self, start: datetime, end: datetime) -> List[DailyCost]:
        """Per-UTC-day totals in [start, end), oldest first."""

    @abstractmethod
    def entries(
        self,
        account_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        limit: int = 1000
    ) -> List[CostLedgerEntry]:
        """Entries for one account, newest first."""

    @abstractmethod
    def delete_older_than(self, cutoff: datetime, max_cost_threshold: Decimal) -> int:
        """Delete entries before ``cutoff`` that cost less than the threshold.

        Returns:
            Number of entries deleted
        """

    def monthly_cost(self, account_id: str, year: int, month: int) -> Decimal:
        """Total cost for an account in one calendar month."""
        start, end = cycles.month_bounds(year, month)
        return self.sum_cost(account_id, start, end)

    def top_spenders_in_window(
        self,
        limit: int = 10,
        window_days: int = 30,
        now: Optional[datetime] = None
    ) -> List[SpenderSummary]:
        """Top spenders over the trailing ``window_days``."""
        end = cycles.to_utc(now or cycles.utcnow())
        start = end - timedelta(days=window_days)
        # end is inclusive of "now"
        return self.top_spenders(start, end + timedelta(microseconds=1), limit)


class SqliteCostLedger(CostLedger):
    """Ledger persisted in a SQLite table.

    Costs are stored as integer micro-dollars so SUM() is exact and
    reconciles with the Decimal counters.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        """Initialize the ledger with a database path.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path

    def initialize_schema(self) -> None:
        """Create the cost_ledger table and its indexes if they don't exist.

        No UPDATE is ever performed on this table; DELETE only by retention.
        """
        conn = get_connection(self.db_path)
        try:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS cost_ledger (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    account_id TEXT NOT NULL,
                    operation_kind TEXT NOT NULL,
                    model TEXT NOT NULL,
                    input_tokens INTEGER NOT NULL CHECK (input_tokens >= 0),
                    output_tokens INTEGER NOT NULL CHECK (output_tokens >= 0),
                    cost_micros INTEGER NOT NULL CHECK (cost_micros >= 0),
                    cached INTEGER NOT NULL DEFAULT 0,
                    timestamp TEXT NOT NULL
                )
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_cost_ledger_account_time
                ON cost_ledger (account_id, timestamp)
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_cost_ledger_time
                ON cost_ledger (timestamp)
            """)
            conn.commit()
        except sqlite3.Error as e:
            raise StorageUnavailable(f"Could not create ledger schema: {e}", "initialize_schema") from e
        finally:
            conn.close()

    def _query(self, sql: str, params) -> list:
        conn = get_connection(self.db_path)
        try:
            return conn.execute(sql, params).fetchall()
        except sqlite3.Error as e:
            raise StorageUnavailable(f"Ledger query failed: {e}", "query") from e
        finally:
            conn.close()

    def append(self, entry: CostLedgerEntry) -> None:
        """Insert a single entry into the append-only ledger.

        Args:
            entry: The ledger entry to record

        Raises:
            StorageUnavailable: If the insert fails; nothing is written
        """
        conn = get_connection(self.db_path)
        try:
            conn.execute("""
                INSERT INTO cost_ledger
                (account_id, operation_kind, model, input_tokens, output_tokens,
                 cost_micros, cached, timestamp)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                entry.account_id,
                entry.operation_kind.value,
                entry.model,
                entry.input_tokens,
                entry.output_tokens,
                cost_to_micros(entry.cost_usd),
                int(entry.cached),
                cycles.to_iso(entry.timestamp)
            ))
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise StorageUnavailable(f"Ledger append failed: {e}", "append") from e
        finally:
            conn.close()

    def sum_cost(self, account_id: str, start: datetime, end: datetime) -> Decimal:
        rows = self._query("""
            SELECT SUM(cost_micros) FROM cost_ledger
            WHERE account_id = ? AND timestamp >= ? AND timestamp < ?
        """, (account_id, cycles.to_iso(start), cycles.to_iso(end)))
        return micros_to_cost(rows[0][0])

    def aggregate_by_kind(
        self,
        account_id: Optional[str],
        start: datetime,
        end: datetime
    ) -> Dict[OperationKind, KindAggregate]:
        query = """
            SELECT operation_kind,
                   COUNT(*),
                   SUM(cost_micros),
                   SUM(cached),
                   SUM(input_tokens + output_tokens)
            FROM cost_ledger
            WHERE timestamp >= ? AND timestamp < ?
        """
        params = [cycles.to_iso(start), cycles.to_iso(end)]
        if account_id is not None:
            query += " AND account_id = ?"
            params.append(account_id)
        query += " GROUP BY operation_kind"

        return {
            OperationKind(row[0]): KindAggregate(
                count=row[1],
                total_cost=micros_to_cost(row[2]),
                cached_count=row[3] or 0,
                total_tokens=row[4] or 0
            )
            for row in self._query(query, params)
        }

    def aggregate_by_model(self, start: datetime, end: datetime) -> List[ModelAggregate]:
        rows = self._query("""
            SELECT model, COUNT(*), SUM(cost_micros),
                   SUM(input_tokens), SUM(output_tokens)
            FROM cost_ledger
            WHERE timestamp >= ? AND timestamp < ?
            GROUP BY model
            ORDER BY SUM(cost_micros) DESC, model
        """, (cycles.to_iso(start), cycles.to_iso(end)))
        return [
            ModelAggregate(
                model=row[0],
                count=row[1],
                total_cost=micros_to_cost(row[2]),
                input_tokens=row[3] or 0,
                output_tokens=row[4] or 0
            )
            for row in rows
        ]

    def top_spenders(self, start: datetime, end: datetime, limit: int = 10) -> List[SpenderSummary]:
        rows = self._query("""
            SELECT account_id, SUM(cost_micros), COUNT(*),
                   SUM(input_tokens + output_tokens), SUM(cached)
            FROM cost_ledger
            WHERE timestamp >= ? AND timestamp < ?
            GROUP BY account_id
            ORDER BY SUM(cost_micros) DESC, account_id
            LIMIT ?
        """, (cycles.to_iso(start), cycles.to_iso(end), limit))
        return [
            SpenderSummary(
                account_id=row[0],
                total_cost=micros_to_cost(row[1]),
                total_operations=row[2],
                total_tokens=row[3] or 0,
                cached_operations=row[4] or 0
            )
            for row in rows
        ]

    def daily_costs(self, start: datetime, end: datetime) -> List[DailyCost]:
        rows = self._query("""
            SELECT substr(timestamp, 1, 10) AS day, SUM(cost_micros),
                   COUNT(*), COUNT(DISTINCT account_id)
            FROM cost_ledger
            WHERE timestamp >= ? AND timestamp < ?
            GROUP BY day
            ORDER BY day
        """, (cycles.to_iso(start), cycles.to_iso(end)))
        return [
            DailyCost(day=row[0], cost=micros_to_cost(row[1]), operations=row[2], unique_accounts=row[3])
            for row in rows
        ]

    def entries(
        self,
        account_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        limit: int = 1000
    ) -> List[CostLedgerEntry]:
        query = """
            SELECT account_id, operation_kind, model, input_tokens,
                   output_tokens, cost_micros, cached, timestamp
            FROM cost_ledger
            WHERE account_id = ?
        """
        params = [account_id]
        if start is not None:
            query += " AND timestamp >= ?"
            params.append(cycles.to_iso(start))
        if end is not None:
            query += " AND timestamp < ?"
            params.append(cycles.to_iso(end))
        query += " ORDER BY timestamp DESC, id DESC LIMIT ?"
        params.append(limit)

        return [
            CostLedgerEntry(
                account_id=row[0],
                operation_kind=OperationKind(row[1]),
                model=row[2],
                input_tokens=row[3],
                output_tokens=row[4],
                cost_usd=micros_to_cost(row[5]),
                cached=bool(row[6]),
                timestamp=cycles.from_iso(row[7])
            )
            for row in self._query(query, params)
        ]

    def delete_older_than(self, cutoff: datetime, max_cost_threshold: Decimal) -> int:
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute("""
                DELETE FROM cost_ledger
                WHERE timestamp < ? AND cost_micros < ?
            """, (cycles.to_iso(cutoff), cost_to_micros(Decimal(max_cost_threshold))))
            conn.commit()
            return cursor.rowcount
        except sqlite3.Error as e:
            conn.rollback()
            raise StorageUnavailable(f"Ledger retention delete failed: {e}", "delete_older_than") from e
        finally:
            conn.close()


class InMemoryCostLedger(CostLedger):
    """Process-local ledger for development and tests.

    Nothing survives a restart.
    """

    def __init__(self):
        self._entries: List[CostLedgerEntry] = []
        self._lock = threading.Lock()

    def append(self, entry: CostLedgerEntry) -> None:
        with self._lock:
            self._entries.append(entry)

    def _window(self, start: Optional[datetime], end: Optional[datetime],
                account_id: Optional[str] = None) -> List[CostLedgerEntry]:
        with self._lock:
            selected = list(self._entries)
        if account_id is not None:
            selected = [e for e in selected if e.account_id == account_id]
        if start is not None:
            start = cycles.to_utc(start)
            selected = [e for e in selected if cycles.to_utc(e.timestamp) >= start]
        if end is not None:
            end = cycles.to_utc(end)
            selected = [e for e in selected if cycles.to_utc(e.timestamp) < end]
        return selected

    def sum_cost(self, account_id: str, start: datetime, end: datetime) -> Decimal:
        return sum((e.cost_usd for e in self._window(start, end, account_id)), Decimal("0"))

    def aggregate_by_kind(
        self,
        account_id: Optional[str],
        start: datetime,
        end: datetime
    ) -> Dict[OperationKind, KindAggregate]:
        grouped = defaultdict(list)
        for entry in self._window(start, end, account_id):
            grouped[entry.operation_kind].append(entry)
        return {
            kind: KindAggregate(
                count=len(items),
                total_cost=sum((e.cost_usd for e in items), Decimal("0")),
                cached_count=sum(1 for e in items if e.cached),
                total_tokens=sum(e.total_tokens for e in items)
            )
            for kind, items in grouped.items()
        }

    def aggregate_by_model(self, start: datetime, end: datetime) -> List[ModelAggregate]:
        grouped = defaultdict(list)
        for entry in self._window(start, end):
            grouped[entry.model].append(entry)
        rows = [
            ModelAggregate(
                model=model,
                count=len(items),
                total_cost=sum((e.cost_usd for e in items), Decimal("0")),
                input_tokens=sum(e.input_tokens for e in items),
                output_tokens=sum(e.output_tokens for e in items)
            )
            for model, items in grouped.items()
        ]
        return sorted(rows, key=lambda r: (-r.total_cost, r.model))

    def top_spenders(self, start: datetime, end: datetime, limit: int = 10) -> List[SpenderSummary]:
        grouped = defaultdict(list)
        for entry in self._window(start, end):
            grouped[entry.account_id].append(entry)
        rows = [
            SpenderSummary(
                account_id=account_id,
                total_cost=sum((e.cost_usd for e in items), Decimal("0")),
                total_operations=len(items),
                total_tokens=sum(e.total_tokens for e in items),
                cached_operations=sum(1 for e in items if e.cached)
            )
            for account_id, items in grouped.items()
        ]
        return sorted(rows, key=lambda r: (-r.total_cost, r.account_id))[:limit]

    def daily_costs(self, start: datetime, end: datetime) -> List[DailyCost]:
        grouped = defaultdict(list)
        for entry in self._window(start, end):
            grouped[cycles.to_iso(entry.timestamp)[:10]].append(entry)
        return [
            DailyCost(
                day=day,
                cost=sum((e.cost_usd for e in grouped[day]), Decimal("0")),
                operations=len(grouped[day]),
                unique_accounts=len({e.account_id for e in grouped[day]})
            )
            for day in sorted(grouped)
        ]

    def entries(
        self,
        account_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        limit: int = 1000
    ) -> List[CostLedgerEntry]:
        selected = self._window(start, end, account_id)
        # Stable sort keeps insertion order reversed for equal timestamps
        selected.reverse()
        selected.sort(key=lambda e: cycles.to_utc(e.timestamp), reverse=True)
        return selected[:limit]

    def delete_older_than(self, cutoff: datetime, max_cost_threshold: Decimal) -> int:
        cutoff = cycles.to_utc(cutoff)
        threshold = Decimal(max_cost_threshold)
        with self._lock:
            kept = [
                e for e in self._entries
                if not (cycles.to_utc(e.timestamp) < cutoff and e.cost_usd < threshold)
            ]
            deleted = len(self._entries) - len(kept)
            self._entries = kept
        return deleted
