from contextlib import contextmanager
from typing import Iterator

import structlog
from sqlalchemy import create_engine
from sqlalchemy.exc import OperationalError, TimeoutError as PoolTimeoutError
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from .config import settings
from .errors import DependencyTimeoutError


logger = structlog.get_logger(__name__)

_TIMEOUT_MARKERS = (
    "database is locked",
    "statement timeout",
    "canceling statement due to",
    "lock timeout",
    "timeout expired",
    "could not connect",
    "connection refused",
)


def _connect_args(url: str) -> dict:
    timeout = settings.store_timeout_seconds
    if url.startswith("sqlite"):
        return {"check_same_thread": False, "timeout": timeout}
    if url.startswith("postgresql"):
        ms = int(timeout * 1000)
        return {
            "connect_timeout": max(int(timeout), 1),
            "options": f"-c statement_timeout={ms} -c lock_timeout={ms}",
        }
    return {}


def build_engine(url: str, **kwargs):
    options = dict(future=True, pool_pre_ping=True, connect_args=_connect_args(url))
    if not url.startswith("sqlite"):
        options.update(pool_size=5, max_overflow=10, pool_recycle=3600, pool_timeout=settings.store_timeout_seconds)
    options.update(kwargs)
    return create_engine(url, **options)


engine = build_engine(settings.database_url)

# Fresh Session per request; never share one across requests
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)

Base = declarative_base()


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def is_timeout_error(exc: Exception) -> bool:
    if isinstance(exc, PoolTimeoutError):
        return True
    if isinstance(exc, OperationalError):
        message = str(getattr(exc, "orig", exc)).lower()
        return any(marker in message for marker in _TIMEOUT_MARKERS)
    return False


@contextmanager
def unit_of_work(db: Session) -> Iterator[Session]:
    """
    Run a block of mutations as one transaction.

    Commits when the block exits cleanly and rolls back on any exception, so
    a caller never observes partial state. Store timeouts surface as
    DependencyTimeoutError after the rollback.
    """
    try:
        yield db
        db.commit()
    except Exception as exc:
        db.rollback()
        if is_timeout_error(exc):
            logger.warning("store_timeout", error=str(exc))
            raise DependencyTimeoutError("Store did not respond in time; nothing was applied") from exc
        raise
