"""
Database engine and transactional session scope.

Every process (Celery workers and the CLI) shares one lazily created engine
per process. Work happens in short ``get_db_session()`` blocks, each of which
is exactly one transaction; nothing holds a session across an external call.
"""

import logging
from collections.abc import Generator
from contextlib import contextmanager
from typing import Any

from sqlalchemy import Engine, create_engine
from sqlalchemy.orm import Session, sessionmaker

from atelier.core.config import get_settings
from atelier.models.base import Base

logger = logging.getLogger(__name__)


def create_db_engine(database_url: str | None = None) -> Engine:
    """
    Create an engine for the configured (or given) database URL.

    Server databases get a pool sized to the worker's task concurrency;
    SQLite keeps SQLAlchemy's default single-connection handling.
    """
    settings = get_settings()
    url = database_url or settings.database_url

    engine_kwargs: dict[str, Any] = {"pool_pre_ping": True}
    if not url.startswith("sqlite"):
        engine_kwargs.update(
            pool_size=settings.worker_concurrency,
            max_overflow=5,
            pool_recycle=1800,  # Recycle connections every 30 minutes
        )
    if settings.debug:
        engine_kwargs["echo"] = True

    return create_engine(url, **engine_kwargs)


_engine: Engine | None = None
_SessionLocal: sessionmaker[Session] | None = None


def get_engine() -> Engine:
    global _engine
    if _engine is None:
        _engine = create_db_engine()
    return _engine


def get_session_factory() -> sessionmaker[Session]:
    global _SessionLocal
    if _SessionLocal is None:
        _SessionLocal = sessionmaker(
            autocommit=False,
            autoflush=False,
            # Rows stay readable after the block commits and closes
            expire_on_commit=False,
            bind=get_engine(),
        )
    return _SessionLocal


@contextmanager
def get_db_session() -> Generator[Session, None, None]:
    """
    Run one transaction.

    Commits when the block exits cleanly, rolls back and re-raises on any
    exception, and always closes the session.

    Example:
        ```python
        with get_db_session() as db:
            artifact = get_artifact(db, artifact_id, for_update=True)
            artifact.mark_failed("Render timed out")
        ```
    """
    session = get_session_factory()()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def init_db() -> None:
    """
    Create any missing tables.

    Intended for tests and local development; deployed schemas are managed
    outside this package.
    """
    # Import all models to ensure they are registered with Base
    import atelier.models  # noqa: F401

    engine = get_engine()
    Base.metadata.create_all(bind=engine)
    logger.info("Database tables ensured", extra={"dialect": engine.dialect.name})
