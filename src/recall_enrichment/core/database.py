"""Synchronous SQLAlchemy engine and session factory.

The ``items`` table belongs to the external CRUD API; this package only reads
and updates its enrichment columns.  Celery workers run each job inside
``asyncio.run()``, and item writes are dispatched to a worker thread, so a
plain synchronous engine (psycopg2) is all that is needed.

The engine is built lazily on first use so that importing this module never
requires a reachable database (tests patch :func:`get_sync_session`).
"""

from __future__ import annotations

from collections.abc import Generator
from contextlib import contextmanager
from functools import lru_cache

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker


def _get_sync_database_url() -> str:
    """Return the configured database URL rewritten for the psycopg2 driver."""
    from recall_enrichment.config.settings import get_settings  # noqa: PLC0415

    url = str(get_settings().database_url)
    return url.replace("postgresql+asyncpg://", "postgresql+psycopg2://").replace(
        "postgresql://", "postgresql+psycopg2://"
    )


@lru_cache
def get_sync_engine() -> Engine:
    """Return the process-wide synchronous engine, creating it on first call."""
    return create_engine(
        _get_sync_database_url(),
        pool_size=5,
        max_overflow=10,
        pool_pre_ping=True,
    )


@lru_cache
def _get_session_factory() -> sessionmaker[Session]:
    return sessionmaker(
        bind=get_sync_engine(),
        expire_on_commit=False,
        autocommit=False,
        autoflush=False,
    )


@contextmanager
def get_sync_session() -> Generator[Session, None, None]:
    """Yield a synchronous SQLAlchemy Session.

    The session is rolled back on exception and always closed.  Callers
    commit explicitly::

        with get_sync_session() as session:
            session.execute(text("UPDATE ..."), {...})
            session.commit()
    """
    session = _get_session_factory()()
    try:
        yield session
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def dispose_engine() -> None:
    """Drop pooled connections inherited across a ``fork()``.

    Called from the Celery ``worker_process_init`` signal.  A no-op if the
    engine was never created in the parent process.
    """
    if get_sync_engine.cache_info().currsize:
        get_sync_engine().dispose(close=False)
