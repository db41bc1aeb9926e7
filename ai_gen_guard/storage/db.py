"""
Database connection management.

Provides SQLite connections for the spend ledger and job records.
"""

import sqlite3
from pathlib import Path

DEFAULT_DB_PATH = "ai_gen_guard.db"


def get_connection(db_path: str = DEFAULT_DB_PATH, timeout: float = 5.0) -> sqlite3.Connection:
    """Create and return a SQLite connection.

    Rows are returned as ``sqlite3.Row`` so columns can be read by name.
    ``timeout`` bounds how long a writer waits on a locked database.

    Args:
        db_path: Path to SQLite database file
        timeout: Seconds to wait for a database lock

    Returns:
        SQLite connection with foreign key constraints enabled
    """
    path = Path(db_path)
    conn = sqlite3.connect(str(path), timeout=timeout)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    return conn
