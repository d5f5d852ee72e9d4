"""
core/db.py -- Engine construction and timestamp helpers shared by the stores.

Both auth/store.py and tenancy/store.py own their tables, but they run against
the same DATABASE_URL so a Subject and its Organization live side by side.

Timestamps are stored as ISO 8601 TEXT in UTC with fixed microsecond
precision. Fixed width keeps lexicographic order equal to chronological order,
so range filters can be done in SQL on plain strings.
"""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Connection, Engine


def _set_sqlite_pragmas(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool. In-memory databases ignore WAL silently.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def make_engine(db_url: str) -> Engine:
    connect_args: dict = {}
    if db_url.startswith("sqlite"):
        # Threadpool workers share pooled connections; writers wait up to 30s
        # for the write lock instead of failing with "database is locked".
        connect_args["check_same_thread"] = False
        connect_args["timeout"] = 30
    engine = create_engine(db_url, connect_args=connect_args)
    if db_url.startswith("sqlite"):
        event.listen(engine, "connect", _set_sqlite_pragmas)
    return engine


@contextmanager
def transaction(engine: Engine, conn: Connection | None = None) -> Iterator[Connection]:
    """Yield conn if the caller already holds a transaction, else open one.

    Lets store methods run standalone (commit on exit, rollback on error) or
    as one step of a larger unit of work started with engine.begin().
    """
    if conn is not None:
        yield conn
        return
    with engine.begin() as own:
        yield own


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed
