"""
Database connection management.

Provides SQLite connections for the reconciliation server.
"""

import sqlite3
from pathlib import Path

DEFAULT_DB_PATH = "usage_sync.db"


def get_connection(db_path: str = DEFAULT_DB_PATH) -> sqlite3.Connection:
    """Create and return a SQLite database connection with foreign keys enabled.

    The connection runs in autocommit mode (``isolation_level=None``) so
    transactions are opened explicitly with ``BEGIN IMMEDIATE`` and cover
    every statement of a write, reads included.

    Args:
        db_path: Path to SQLite database file

    Returns:
        SQLite connection with foreign key constraints enabled
    """
    path = Path(db_path)
    conn = sqlite3.connect(str(path), timeout=30, isolation_level=None)
    conn.execute("PRAGMA foreign_keys = ON")
    return conn
