"""
Database connection management.

Provides SQLite connections with a bounded busy wait for data persistence.
"""

import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

import structlog

from usage_analytics.errors import StoreUnavailable

logger = structlog.get_logger(__name__)

DEFAULT_DB_PATH = "usage_analytics.db"
DEFAULT_TIMEOUT_SECONDS = 5.0

# sqlite reports lock timeouts and unreachable files as OperationalError
_UNAVAILABLE_MARKERS = (
    "database is locked",
    "database table is locked",
    "unable to open database file",
    "disk i/o error",
)
_MISSING_SCHEMA_MARKER = "no such table"


def get_connection(
    db_path: str = DEFAULT_DB_PATH,
    timeout: float = DEFAULT_TIMEOUT_SECONDS,
) -> sqlite3.Connection:
    """Create and return a SQLite connection.

    Args:
        db_path: Path to SQLite database file
        timeout: Seconds to wait on a locked database before giving up

    Returns:
        SQLite connection with row access by column name

    Raises:
        StoreUnavailable: If the database file cannot be opened
    """
    path = Path(db_path)
    try:
        conn = sqlite3.connect(str(path), timeout=timeout, check_same_thread=False)
    except sqlite3.OperationalError as e:
        raise StoreUnavailable(f"Cannot open database {db_path}: {e}") from e
    conn.row_factory = sqlite3.Row
    return conn


@contextmanager
def connection(
    db_path: str = DEFAULT_DB_PATH,
    timeout: float = DEFAULT_TIMEOUT_SECONDS,
) -> Iterator[sqlite3.Connection]:
    """Yield a connection, closing it afterwards.

    Lock timeouts, I/O failures and a missing schema raised inside the
    block surface as StoreUnavailable. Any other sqlite error propagates
    unchanged.
    """
    conn = get_connection(db_path, timeout)
    try:
        yield conn
    except sqlite3.OperationalError as e:
        message = str(e).lower()
        if any(marker in message for marker in _UNAVAILABLE_MARKERS):
            logger.warning("store_unavailable", db_path=db_path, error=str(e))
            raise StoreUnavailable(f"Database {db_path} unavailable: {e}") from e
        if _MISSING_SCHEMA_MARKER in message:
            logger.warning("store_not_initialized", db_path=db_path, error=str(e))
            raise StoreUnavailable(
                f"Database {db_path} has no schema, run initialize_schema first: {e}"
            ) from e
        raise
    finally:
        conn.close()
