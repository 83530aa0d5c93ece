"""
Database connection management.

Provides SQLite connections shared by concurrent worker processes.
"""

import sqlite3
from pathlib import Path


def get_connection(db_path: str = "rental_meter_ledger.db") -> sqlite3.Connection:
    """Create and return a SQLite connection suited to concurrent appenders.

    WAL journaling lets readers list a partition while other workers append,
    and the busy timeout makes competing writers wait instead of failing.

    Args:
        db_path: Path to SQLite database file

    Returns:
        SQLite connection
    """
    path = Path(db_path)
    if path.parent and not path.parent.exists():
        path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(path))
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA busy_timeout=10000")
    return conn
