"""
Database engine and session management for the SQLAlchemy store

Provides:
- Engine/session factory construction from a database URL
- Transaction context manager with commit/rollback
"""

from contextlib import contextmanager
from typing import Generator, Optional

import structlog
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from experiments_core.core.config import settings

logger = structlog.get_logger(__name__)

Base = declarative_base()


def build_engine(database_url: Optional[str] = None, echo: Optional[bool] = None) -> Engine:
    """Create an engine for the given URL (defaults to settings.DATABASE_URL).

    In-memory SQLite URLs share a single connection so every session sees the
    same database.
    """
    url = database_url or settings.DATABASE_URL
    kwargs = {
        "echo": settings.DB_ECHO if echo is None else echo,
        "pool_pre_ping": True,
    }
    if url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False}
        if url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
    return create_engine(url, **kwargs)


def build_session_factory(engine: Engine) -> sessionmaker:
    """Create a session factory bound to ``engine``."""
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)


def create_tables(engine: Engine) -> None:
    """Create all tables registered on ``Base`` (idempotent)."""
    # Register table definitions before create_all
    from experiments_core.models import tables  # noqa: F401

    Base.metadata.create_all(bind=engine)


@contextmanager
def transaction(db: Session) -> Generator[Session, None, None]:
    """
    Synchronous transaction context manager with automatic commit/rollback.

    Usage:
        with transaction(db) as session:
            session.add(new_object)
            # Commits automatically on success, rolls back on exception

    Args:
        db: SQLAlchemy Session instance

    Yields:
        The same session for use within the transaction

    Raises:
        Any exception raised within the context (after rollback)
    """
    try:
        yield db
        db.commit()
        logger.debug("Transaction committed successfully")
    except Exception as e:
        db.rollback()
        logger.error(
            "Transaction rolled back due to error",
            error=str(e),
            error_type=type(e).__name__,
        )
        raise
