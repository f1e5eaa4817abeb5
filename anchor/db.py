"""SQLite engine and session handling for the note store."""

from __future__ import annotations

import logging
import os
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlmodel import Session, SQLModel, create_engine

logger = logging.getLogger(__name__)

DEFAULT_DB_PATH = Path.home() / ".anchor" / "anchor.db"
BUSY_TIMEOUT_MS = 5000

# (url, engine) of the database currently in use
_bound: Optional[tuple[str, Engine]] = None


def database_path() -> Path:
    return Path(os.getenv("ANCHOR_DB_PATH") or DEFAULT_DB_PATH).expanduser()


def _on_connect(dbapi_connection, connection_record) -> None:
    cursor = dbapi_connection.cursor()
    try:
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute(f"PRAGMA busy_timeout={BUSY_TIMEOUT_MS}")
    finally:
        cursor.close()


def _build(path: Path) -> Engine:
    path.parent.mkdir(parents=True, exist_ok=True)
    # sync routes run in the server's threadpool, so connections cross threads
    engine = create_engine(f"sqlite:///{path}", connect_args={"check_same_thread": False})
    event.listen(engine, "connect", _on_connect)
    logger.debug("database engine bound to %s", path)
    return engine


def get_engine() -> Engine:
    """Engine for the current ``ANCHOR_DB_PATH``; rebuilt when the path changes."""
    global _bound
    path = database_path()
    url = str(path)
    if _bound is None or _bound[0] != url:
        reset_engine()
        _bound = (url, _build(path))
    return _bound[1]


def reset_engine() -> None:
    global _bound
    if _bound is not None:
        _bound[1].dispose()
        _bound = None


def init_db() -> None:
    from . import models  # noqa: F401  (table registration)

    SQLModel.metadata.create_all(get_engine())


def get_session() -> Session:
    # returned models keep their values after the session closes
    return Session(get_engine(), expire_on_commit=False)


@contextmanager
def session_scope() -> Iterator[Session]:
    session = get_session()
    try:
        yield session
        session.commit()
    except Exception as exc:
        logger.debug("rolling back session: %s", exc)
        session.rollback()
        raise
    finally:
        session.close()
