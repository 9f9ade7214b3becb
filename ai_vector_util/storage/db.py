"""
Database connection management.

Provides SQLite connections for the usage ledger and model registry.
"""

import sqlite3
from pathlib import Path

DEFAULT_DB_PATH = "ai_vector_util.db"


def get_connection(db_path: str = DEFAULT_DB_PATH, timeout: float = 5.0) -> sqlite3.Connection:
    """Create and return a SQLite database connection with foreign keys enabled.
    
    Every caller gets its own connection, so each unit of work commits or
    rolls back independently of any other open connection.
    
    Args:
        db_path: Path to SQLite database file
        timeout: Seconds to wait on a locked database before failing
        
    Returns:
        SQLite connection with foreign key constraints enabled
    """
    path = Path(db_path)
    conn = sqlite3.connect(str(path), timeout=timeout)
    conn.execute("PRAGMA foreign_keys = ON")
    return conn
