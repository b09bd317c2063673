"""
Database connection and session management

Provides:
- Sync database sessions with proper pooling
- Transaction context manager for ACID compliance
- Post-commit callbacks that fire only after a successful commit
"""

from contextlib import contextmanager
from typing import Callable, Generator, List

import structlog
from fhir_gateway.core.config import settings
from sqlalchemy import create_engine, event, text
from sqlalchemy.orm import Session, declarative_base, sessionmaker

logger = structlog.get_logger(__name__)

_AFTER_COMMIT_KEY = "after_commit_callbacks"


def build_engine(database_url: str = None):
    """Create an engine for the given URL (defaults to settings.DATABASE_URL)."""
    database_url = database_url or settings.DATABASE_URL
    if database_url.startswith("sqlite"):
        # Sessions are used from the handshake and finalizer worker threads
        return create_engine(database_url, connect_args={"check_same_thread": False})
    return create_engine(
        database_url,
        pool_pre_ping=True,
        pool_size=settings.DB_POOL_SIZE,
        max_overflow=settings.DB_MAX_OVERFLOW,
        pool_recycle=settings.DB_POOL_RECYCLE,
        echo_pool=settings.DEBUG,
    )


engine = build_engine()

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()


def get_db() -> Generator[Session, None, None]:
    """Get database session"""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


# =============================================================================
# Transaction Context Managers
# =============================================================================


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
        # rollback() emits no event when nothing was flushed yet
        discard_after_commit(db)
        logger.error(
            "Transaction rolled back due to error",
            error=str(e),
            error_type=type(e).__name__,
        )
        raise


# =============================================================================
# Post-commit callbacks
# =============================================================================


def register_after_commit(db: Session, callback: Callable[[], None]) -> None:
    """
    Run ``callback`` once the session's current transaction commits.

    The callback never runs if the transaction rolls back. Callbacks run in
    registration order on the committing thread and must not use ``db``.
    """
    db.info.setdefault(_AFTER_COMMIT_KEY, []).append(callback)


def pending_after_commit(db: Session) -> List[Callable[[], None]]:
    """Callbacks registered on ``db`` that have not fired yet."""
    return list(db.info.get(_AFTER_COMMIT_KEY, []))


def discard_after_commit(db: Session) -> int:
    """Drop callbacks registered on ``db``; returns how many were dropped."""
    return len(db.info.pop(_AFTER_COMMIT_KEY, []))


@event.listens_for(Session, "after_commit")
def _run_after_commit_callbacks(session: Session) -> None:
    callbacks = session.info.pop(_AFTER_COMMIT_KEY, [])
    for callback in callbacks:
        try:
            callback()
        except Exception:
            # The commit already happened; report it but don't fail the caller
            logger.exception("after_commit_callback_failed", callback=getattr(callback, "__name__", repr(callback)))


@event.listens_for(Session, "after_rollback")
def _discard_after_commit_callbacks(session: Session) -> None:
    dropped = discard_after_commit(session)
    if dropped:
        logger.debug("after_commit_callbacks_discarded", count=dropped)


def check_database_connection() -> bool:
    """Check if the database is accessible"""
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except Exception:
        return False


def init_db(bind=None) -> None:
    """Create tables for all registered models."""
    # Import models so they register with Base.metadata
    from fhir_gateway.models import fhir_resource  # noqa: F401

    Base.metadata.create_all(bind=bind or engine)
