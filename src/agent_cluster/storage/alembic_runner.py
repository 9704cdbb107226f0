"""Utilities to run Alembic migrations programmatically."""

from __future__ import annotations

from pathlib import Path

from alembic import command
from alembic.config import Config
from alembic.runtime.migration import MigrationContext

from agent_cluster.storage.common import build_sqlite_engine

MIGRATIONS_DIR = Path(__file__).resolve().parent / "migrations"
SCHEMAS = ("tasks", "memory")


def upgrade_head(db_path: Path, *, schema: str) -> None:
    """Apply Alembic migrations of one store schema up to head for the given SQLite database."""

    if schema not in SCHEMAS:
        raise ValueError(f"Unknown storage schema: {schema!r}. Expected one of {SCHEMAS}.")

    config = Config()
    config.set_main_option("script_location", str(MIGRATIONS_DIR / schema))
    config.set_main_option("sqlalchemy.url", f"sqlite:///{db_path}")
    command.upgrade(config, "head")


def current_revision(db_path: Path) -> str | None:
    """Return the applied Alembic revision, or None for an unmigrated database."""

    engine = build_sqlite_engine(db_path=db_path)
    try:
        with engine.connect() as connection:
            return MigrationContext.configure(connection).get_current_revision()
    finally:
        engine.dispose()
