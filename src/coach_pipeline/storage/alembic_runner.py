"""Apply schema migrations at startup."""

from __future__ import annotations

import logging
from pathlib import Path

from alembic import command
from alembic.config import Config
from coach_pipeline.storage.common import build_sqlite_engine

logger = logging.getLogger(__name__)

PROJECT_ROOT = Path(__file__).resolve().parents[3]


def upgrade_head(db_path: Path, *, busy_timeout_ms: int = 5000) -> None:
    """Migrate the SQLite store to head over a connection with the runtime pragmas.

    Several workers may start against the same file at once; the busy timeout lets
    the later ones wait for the first migration instead of failing on a locked database.
    """

    config = Config(str(PROJECT_ROOT / "alembic.ini"))
    config.set_main_option("script_location", str(PROJECT_ROOT / "alembic"))
    config.set_main_option("sqlalchemy.url", f"sqlite:///{db_path}")
    config.attributes["configure_logger"] = False

    engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)
    try:
        with engine.begin() as connection:
            config.attributes["connection"] = connection
            command.upgrade(config, "head")
    finally:
        engine.dispose()
    logger.debug("Schema at head db_path=%s", db_path)
