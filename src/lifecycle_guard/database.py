"""
Database engine, session factory and the unit-of-work wrapper.
"""
from contextlib import contextmanager
from typing import Generator, Iterator

import structlog
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from lifecycle_guard.config import Settings, get_settings
from lifecycle_guard.errors import ConflictError, PersistenceUnavailableError

logger = structlog.get_logger(__name__)

Base = declarative_base()

# Driver failures that mean the database could not be reached in time
UNAVAILABLE_ERRORS = (OperationalError, InterfaceError, PoolTimeoutError)


def build_engine(settings: Settings) -> Engine:
    """Create an engine whose connection attempts give up after a bounded wait"""
    url = settings.database_url
    if url.startswith("sqlite"):
        connect_args = {"check_same_thread": False, "timeout": settings.database_timeout_seconds}
        return create_engine(url, connect_args=connect_args, echo=False)
    return create_engine(
        url,
        pool_pre_ping=True,
        pool_timeout=settings.database_timeout_seconds,
        connect_args={"connect_timeout": int(settings.database_timeout_seconds)},
    )


engine = build_engine(get_settings())
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db() -> Generator[Session, None, None]:
    """Database session dependency"""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def atomic(db: Session) -> Iterator[Session]:
    """
    Run a block of writes as one all-or-nothing unit.

    Commits on success. On any error the whole session is rolled back, so a
    later read sees the state from before the block. Lost optimistic
    version checks become ConflictError; driver failures become
    PersistenceUnavailableError.
    """
    try:
        yield db
        db.commit()
    except StaleDataError as exc:
        db.rollback()
        logger.warning("write_conflict", error=str(exc))
        raise ConflictError("Resource was modified by another request") from exc
    except UNAVAILABLE_ERRORS as exc:
        db.rollback()
        logger.error("persistence_unavailable", error=str(exc))
        raise PersistenceUnavailableError("Persistence layer unavailable") from exc
    except Exception:
        db.rollback()
        raise


@contextmanager
def reading(db: Session) -> Iterator[Session]:
    """Translate driver failures during reads the same way atomic() does"""
    try:
        yield db
    except UNAVAILABLE_ERRORS as exc:
        db.rollback()
        logger.error("persistence_unavailable", error=str(exc))
        raise PersistenceUnavailableError("Persistence layer unavailable") from exc
