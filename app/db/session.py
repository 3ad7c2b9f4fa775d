# Copyright (c) Rich Connexions Ltd. All rights reserved.
# Licensed under the MIT License. See LICENSE for details.
"""Database engine and sessions for partners, access requests and audit entries.

Request handlers get a session from ``get_db()``. The audit logger, the
manual-grant rule and the CLI open their own through ``SessionLocal`` or
``get_db_session()`` so that their writes and reads do not share the
caller's transaction.
"""

import logging
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Generator, Optional

from sqlalchemy import create_engine, event
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.config import DATABASE_URL

log = logging.getLogger(__name__)

_IS_SQLITE = DATABASE_URL.startswith("sqlite")

_SQLITE_PRAGMAS = (
    "PRAGMA foreign_keys=ON",
    "PRAGMA journal_mode=WAL",
    "PRAGMA busy_timeout=30000",
)


def _engine_options(url: str) -> dict[str, Any]:
    if not url.startswith("sqlite"):
        return {"pool_pre_ping": True}
    # One shared connection: the deployment runs a single worker, and an
    # in-memory database only exists on the connection that created it.
    return {
        "connect_args": {"check_same_thread": False, "timeout": 30},
        "poolclass": StaticPool,
    }


engine = create_engine(DATABASE_URL, **_engine_options(DATABASE_URL))

# Rows outlive their session in audit details and API responses.
SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@event.listens_for(engine, "connect")
def _apply_sqlite_pragmas(dbapi_connection, connection_record):
    if not _IS_SQLITE:
        return
    cursor = dbapi_connection.cursor()
    for pragma in _SQLITE_PRAGMAS:
        cursor.execute(pragma)
    cursor.close()


def get_db() -> Generator[Session, None, None]:
    """FastAPI dependency; services commit explicitly."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def get_db_session() -> Generator[Session, None, None]:
    """Session that commits on a clean exit and rolls back on error."""
    db = SessionLocal()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def _sqlite_file(url: str) -> Optional[Path]:
    if not url.startswith("sqlite:///"):
        return None
    path = url[len("sqlite:///"):]
    if not path or path == ":memory:":
        return None
    return Path(path)


def init_database(attempts: int = 5, backoff: float = 2.0) -> None:
    """Create the partner, access request and audit tables.

    A rolling deploy can briefly leave the previous instance holding the
    SQLite write lock, so "database is locked" is retried with exponential
    backoff. Any other error, or the last failed attempt, is raised.
    """
    from app.db.models import Base

    db_file = _sqlite_file(DATABASE_URL)
    if db_file is not None:
        db_file.parent.mkdir(parents=True, exist_ok=True)
    log.info(f"Creating tables in {db_file or DATABASE_URL.split('@')[-1]}")

    for attempt in range(1, attempts + 1):
        try:
            Base.metadata.create_all(bind=engine)
        except OperationalError as exc:
            locked = "database is locked" in str(exc) or "SQLITE_BUSY" in str(exc)
            if not locked or attempt == attempts:
                log.error(f"Table creation failed after {attempt} attempt(s): {exc}")
                raise
            delay = backoff * 2 ** (attempt - 1)
            log.warning(f"Database locked, retrying table creation in {delay:.1f}s ({attempt}/{attempts})")
            time.sleep(delay)
        else:
            return
