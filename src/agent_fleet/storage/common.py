"""Clock and SQLite helpers shared by the fleet stores."""

from __future__ import annotations

import sqlite3
from datetime import UTC, datetime
from pathlib import Path

from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlalchemy.pool import NullPool
from sqlmodel import create_engine

# WAL lets CLI readers inspect sessions while hosted loops write heartbeats.
_SQLITE_PRAGMAS = (
    "PRAGMA journal_mode = WAL",
    "PRAGMA synchronous = NORMAL",
    "PRAGMA foreign_keys = ON",
)


def utc_now() -> datetime:
    return datetime.now(tz=UTC)


def parse_timestamp(value: str) -> datetime:
    """Aware UTC datetime from an ISO-8601 string; naive input is taken as UTC.

    Raises ``ValueError`` for anything ``datetime.fromisoformat`` rejects.
    """

    return to_utc_aware(datetime.fromisoformat(value))


def to_db_datetime(value: datetime) -> datetime:
    """Naive UTC value for SQLite columns."""

    if value.tzinfo is None:
        return value
    return value.astimezone(UTC).replace(tzinfo=None)


def to_utc_aware(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def seconds_since(moment: datetime, *, now: datetime) -> float:
    return (now - moment).total_seconds()


def sqlite_url(db_path: Path) -> str:
    return f"sqlite:///{db_path}"


def build_sqlite_engine(*, db_path: Path, busy_timeout_ms: int) -> Engine:
    """Engine without pooling; every connection gets the fleet pragmas.

    Each thread opens its own short-lived connection, so the engine can be
    shared by every agent loop in the process.
    """

    db_path.parent.mkdir(parents=True, exist_ok=True)
    busy_timeout_ms = max(1, busy_timeout_ms)
    engine = create_engine(
        sqlite_url(db_path),
        connect_args={
            "check_same_thread": False,
            "timeout": max(1.0, busy_timeout_ms / 1000.0),
        },
        poolclass=NullPool,
    )

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection: sqlite3.Connection, _record: object) -> None:
        cursor = dbapi_connection.cursor()
        try:
            cursor.execute(f"PRAGMA busy_timeout = {busy_timeout_ms}")
            for pragma in _SQLITE_PRAGMAS:
                cursor.execute(pragma)
        finally:
            cursor.close()

    return engine
