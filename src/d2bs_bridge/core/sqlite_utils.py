from __future__ import annotations

import sqlite3
from pathlib import Path

SQLITE_PRAGMAS = (
    "PRAGMA journal_mode=WAL;",
    "PRAGMA synchronous=NORMAL;",
    "PRAGMA busy_timeout=5000;",
)

SQLITE_PRAGMAS_DURABLE = (
    "PRAGMA journal_mode=WAL;",
    "PRAGMA synchronous=FULL;",
    "PRAGMA busy_timeout=5000;",
)


class SchemaVersionError(sqlite3.DatabaseError):
    """The database was written by a newer schema than this code knows."""


def connect_sqlite(path: Path, durable: bool = False) -> sqlite3.Connection:
    path.parent.mkdir(parents=True, exist_ok=True)
    # Callers pin the connection to one executor thread, never the loop thread.
    conn = sqlite3.connect(path, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    pragmas = SQLITE_PRAGMAS_DURABLE if durable else SQLITE_PRAGMAS
    for pragma in pragmas:
        conn.execute(pragma)
    return conn


def ensure_schema_version(conn: sqlite3.Connection, version: int) -> int:
    """Record ``version`` on a fresh database and return the stored version.

    Raises ``SchemaVersionError`` when the file carries a newer version.
    """
    conn.execute("CREATE TABLE IF NOT EXISTS schema_info (version INTEGER NOT NULL)")
    row = conn.execute(
        "SELECT version FROM schema_info ORDER BY version DESC LIMIT 1"
    ).fetchone()
    if row is None:
        conn.execute("INSERT INTO schema_info(version) VALUES (?)", (version,))
        return version
    stored = int(row[0])
    if stored > version:
        raise SchemaVersionError(
            f"database schema version {stored} is newer than supported {version}"
        )
    return stored


__all__ = ["SchemaVersionError", "connect_sqlite", "ensure_schema_version"]
