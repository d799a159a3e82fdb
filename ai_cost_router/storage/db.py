"""
SQLite connections for the billing ledger.

The ledger is written from the telemetry worker thread and read by the CLI and
quota seeding, each on its own short-lived connection.
"""

import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

BUSY_TIMEOUT_SECONDS = 5.0


def get_connection(db_path: str = "ai_cost_router.db") -> sqlite3.Connection:
    """Open a ledger connection.

    WAL journaling lets readers run while the billing writer appends, and the
    busy timeout makes concurrent writers wait for the lock instead of failing.

    Args:
        db_path: Path to SQLite database file
    """
    conn = sqlite3.connect(str(Path(db_path)), timeout=BUSY_TIMEOUT_SECONDS)
    conn.execute("PRAGMA journal_mode = WAL")
    return conn


@contextmanager
def ledger_connection(db_path: str) -> Iterator[sqlite3.Connection]:
    """Connection that is always closed, even if the body raises."""
    conn = get_connection(db_path)
    try:
        yield conn
    finally:
        conn.close()
