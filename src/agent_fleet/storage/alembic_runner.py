"""Schema migrations for the fleet session database."""

from __future__ import annotations

import logging
from pathlib import Path

from alembic import command
from alembic.config import Config
from alembic.runtime.migration import MigrationContext
from alembic.script import ScriptDirectory

from agent_fleet.storage.common import build_sqlite_engine, sqlite_url
from agent_fleet.storage.jsonfile import locked

logger = logging.getLogger(__name__)

_PROJECT_ROOT = Path(__file__).resolve().parents[3]


def alembic_config(db_path: Path) -> Config:
    config = Config(str(_PROJECT_ROOT / "alembic.ini"))
    config.set_main_option("script_location", str(_PROJECT_ROOT / "alembic"))
    config.set_main_option("sqlalchemy.url", sqlite_url(db_path))
    return config


def current_revision(db_path: Path) -> str | None:
    """Revision stamped in the database, ``None`` before the first migration."""

    engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=5_000)
    try:
        with engine.connect() as connection:
            return MigrationContext.configure(connection).get_current_revision()
    finally:
        engine.dispose()


def upgrade_head(db_path: Path, *, lock_timeout_seconds: float = 30.0) -> None:
    """Migrate the database to the newest revision.

    Agent processes that start together serialize on ``<db>.lock``; the ones
    that find the schema current skip the upgrade.
    """

    config = alembic_config(db_path)
    head = ScriptDirectory.from_config(config).get_current_head()
    with locked(db_path, timeout_seconds=lock_timeout_seconds):
        current = current_revision(db_path)
        if current == head:
            return
        logger.info("Migrating %s from %s to %s", db_path, current or "empty", head)
        command.upgrade(config, "head")
