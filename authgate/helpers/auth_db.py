"""Database engine and session factory for the login system.

Provides a database-agnostic (SQLite + PostgreSQL) persistence layer
using SQLAlchemy 2.0 declarative base, engine initialization, and a
context-managed session with automatic commit/rollback.

Configuration:
    AUTH_DATABASE_URL env var (default: ``sqlite:///usr/auth.db``)
    AUTH_DATABASE_TIMEOUT env var, seconds (default: ``5``)
"""

import logging
import os
from collections.abc import Generator
from contextlib import contextmanager

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Declarative base, imported by model modules (user_store, audit, attempt_store)
# ---------------------------------------------------------------------------


class Base(DeclarativeBase):
    """Shared declarative base for all login-system ORM models."""


# ---------------------------------------------------------------------------
# Module-level engine / session factory (initialized lazily via init_db)
# ---------------------------------------------------------------------------

_engine: Engine | None = None
_SessionLocal: sessionmaker[Session] | None = None

_DEFAULT_URL = "sqlite:///usr/auth.db"
_DEFAULT_TIMEOUT = 5.0


def _timeout_from_env() -> float:
    raw = os.environ.get("AUTH_DATABASE_TIMEOUT", "")
    if not raw:
        return _DEFAULT_TIMEOUT
    try:
        timeout = float(raw)
    except ValueError:
        raise ValueError(
            f"AUTH_DATABASE_TIMEOUT must be a number, got {raw!r}"
        ) from None
    if timeout <= 0:
        raise ValueError("AUTH_DATABASE_TIMEOUT must be positive")
    return timeout


def init_db(url: str | None = None, timeout: float | None = None) -> Engine:
    """Initialize the auth database engine and session factory.

    Args:
        url: SQLAlchemy connection string.  Falls back to the
            ``AUTH_DATABASE_URL`` env var, then to the built-in default
            (``sqlite:///usr/auth.db``).
        timeout: Seconds a single storage call may wait on a lock or a
            connection before failing.  Falls back to
            ``AUTH_DATABASE_TIMEOUT``.  Calls are never retried.
    """
    global _engine, _SessionLocal

    url = url or os.environ.get("AUTH_DATABASE_URL", _DEFAULT_URL)
    timeout = timeout if timeout is not None else _timeout_from_env()

    connect_args: dict = {}
    engine_kwargs: dict = {}
    if url.startswith("sqlite"):
        # SQLite is not thread-safe by default; allow multi-threaded access
        connect_args["check_same_thread"] = False
        connect_args["timeout"] = timeout
    else:
        connect_args["connect_timeout"] = max(1, int(timeout))
        engine_kwargs["pool_timeout"] = timeout
        engine_kwargs["pool_pre_ping"] = True

    _engine = create_engine(url, echo=False, connect_args=connect_args, **engine_kwargs)
    _SessionLocal = sessionmaker(bind=_engine)

    logger.info("Auth database initialized (%s backend)", url.split("://")[0])
    return _engine


def create_all() -> None:
    """Create every registered table.  Used for SQLite dev setups and tests;
    deployed databases are managed by Alembic."""
    # Import model modules so their tables are registered on Base
    from authgate.helpers import attempt_store, audit, user_store  # noqa: F401

    Base.metadata.create_all(get_engine())


def get_engine() -> Engine:
    """Return the auth database engine.

    Raises:
        RuntimeError: If :func:`init_db` has not been called yet.
    """
    if _engine is None:
        raise RuntimeError(
            "Auth database not initialized. Call init_db() before requesting the engine."
        )
    return _engine


@contextmanager
def get_session() -> Generator[Session, None, None]:
    """Context manager yielding a SQLAlchemy session.

    Commits on clean exit, rolls back on exception, and always closes
    the session.

    Raises:
        RuntimeError: If :func:`init_db` has not been called yet.
    """
    if _SessionLocal is None:
        raise RuntimeError(
            "Auth database not initialized. Call init_db() before requesting a session."
        )

    session = _SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
