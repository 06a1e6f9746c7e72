"""
Database connection management.

Provides SQLite connections for the durable ledger and counter store.
"""

import sqlite3
from decimal import Decimal, ROUND_UP
from pathlib import Path
from typing import Optional

from usage_meter.core.pricing import COST_QUANTUM

DEFAULT_DB_PATH = "usage_meter.db"

# Seconds a writer waits on a locked database before giving up
BUSY_TIMEOUT = 30.0


def get_connection(db_path: str = DEFAULT_DB_PATH) -> sqlite3.Connection:
    """Create and return a SQLite database connection.
    
    Connections use WAL journaling so readers never block the single
    writer, and a busy timeout so concurrent writers queue instead of
    failing with "database is locked".
    
    Args:
        db_path: Path to SQLite database file
        
    Returns:
        SQLite connection with foreign key constraints enabled
    """
    path = Path(db_path)
    conn = sqlite3.connect(str(path), timeout=BUSY_TIMEOUT)
    conn.execute("PRAGMA foreign_keys = ON")
    conn.execute("PRAGMA journal_mode = WAL")
    return conn


def cost_to_micros(cost: Decimal) -> int:
    """Integer micro-dollars for storage; SUM() over integers is exact."""
    return int(Decimal(cost).quantize(COST_QUANTUM, rounding=ROUND_UP) / COST_QUANTUM)


def micros_to_cost(micros: Optional[int]) -> Decimal:
    return Decimal(micros or 0) * COST_QUANTUM
