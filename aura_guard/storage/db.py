"""
Database connection management.

Provides SQLite connection for the durable tier.
"""

import sqlite3
from pathlib import Path

DEFAULT_DB_PATH = "aura_guard.db"


def get_connection(db_path: str = DEFAULT_DB_PATH) -> sqlite3.Connection:
    """Create and return a SQLite database connection.

    Args:
        db_path: Path to SQLite database file

    Returns:
        SQLite connection with a busy timeout so concurrent writers wait
        instead of failing immediately
    """
    path = Path(db_path)
    conn = sqlite3.connect(str(path), timeout=5.0)
    conn.execute("PRAGMA busy_timeout = 5000")
    return conn
