"""Shared pytest fixtures for the test suite.

Provides an in-memory ``db_session`` for model-level tests and
``auth_db_wired``, which points :mod:`authgate.helpers.auth_db` at a fresh
temp-file SQLite database so code calling ``auth_db.get_session()`` (and
several threads at once) works against real tables.
"""

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from authgate.helpers import auth_db
from authgate.helpers.auth_db import Base


@pytest.fixture
def db_session():
    """Provide an in-memory SQLite session with all auth tables created."""
    import authgate.helpers.attempt_store  # noqa: F401  register FailedAttempt on Base
    import authgate.helpers.audit  # noqa: F401  register AuditLog on Base
    import authgate.helpers.user_store  # noqa: F401  ensure models register on Base

    engine = create_engine("sqlite:///:memory:", echo=False)
    Base.metadata.create_all(engine)
    _Session = sessionmaker(bind=engine)
    session = _Session()

    yield session

    session.close()
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def auth_db_wired(tmp_path):
    """Wire auth_db to a temp-file SQLite database with all tables created."""
    original_engine = auth_db._engine
    original_session_local = auth_db._SessionLocal

    engine = auth_db.init_db(f"sqlite:///{tmp_path / 'auth.db'}", timeout=10)
    auth_db.create_all()

    yield engine

    engine.dispose()
    auth_db._engine = original_engine
    auth_db._SessionLocal = original_session_local
