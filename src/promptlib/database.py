"""SQLite engine and sessions for the prompt library.

One engine is cached per process; the CLI resets it around every command so
``--db`` can point each invocation at a different library file. The schema is
owned by the bundled Alembic migrations, never by ``create_all``.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

from alembic import command as alembic_command
from alembic.config import Config as AlembicConfig
from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

_engine: Engine | None = None
_session_factory: sessionmaker[Session] | None = None


def library_url(db_path: Path) -> str:
    return f"sqlite:///{db_path}"


def enable_foreign_keys(engine: Engine) -> None:
    """Turn on SQLite FK enforcement so ratings, run logs and cached renders cascade."""

    @event.listens_for(engine, "connect")
    def _set_sqlite_pragma(dbapi_connection: Any, connection_record: Any) -> None:
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


def _alembic_cfg(db_url: str) -> AlembicConfig:
    # src/promptlib/database.py -> project root, where alembic.ini lives
    project_root = Path(__file__).resolve().parent.parent.parent
    cfg = AlembicConfig(str(project_root / "alembic.ini"))
    cfg.set_main_option("sqlalchemy.url", db_url)
    cfg.set_main_option("script_location", str(project_root / "alembic"))
    return cfg


def get_engine(db_path: str | Path) -> Engine:
    """Engine for the library file at ``db_path``, created on first call."""
    global _engine
    if _engine is not None:
        return _engine
    db_path = Path(db_path)
    db_path.parent.mkdir(parents=True, exist_ok=True)
    _engine = create_engine(library_url(db_path), echo=False)
    enable_foreign_keys(_engine)
    return _engine


def get_session_factory(db_path: str | Path) -> sessionmaker[Session]:
    global _session_factory
    if _session_factory is not None:
        return _session_factory
    _session_factory = sessionmaker(bind=get_engine(db_path))
    return _session_factory


def init_db(db_path: str | Path) -> None:
    """Bring the prompt library at ``db_path`` up to the latest schema.

    Creates the file on first use and applies pending migrations; running it
    against an up-to-date library does nothing.
    """
    db_path = Path(db_path)
    db_path.parent.mkdir(parents=True, exist_ok=True)
    cfg = _alembic_cfg(library_url(db_path))
    # Keep Alembic's INFO lines out of CLI output.
    alembic_logger = logging.getLogger("alembic")
    prev_level = alembic_logger.level
    alembic_logger.setLevel(logging.WARNING)
    try:
        alembic_command.upgrade(cfg, "head")
    finally:
        alembic_logger.setLevel(prev_level)


def reset_engine() -> None:
    """Dispose the cached engine so the next command can open another library."""
    global _engine, _session_factory
    if _engine is not None:
        _engine.dispose()
    _engine = None
    _session_factory = None
