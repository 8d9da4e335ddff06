# tests/conftest.py
from __future__ import annotations

from datetime import datetime, timezone

import pytest
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from usher.core.config import UsherSettings
from usher.db.session import make_session_factory
from usher.migrations import MigrationEngine

FROZEN_NOW = datetime(2025, 1, 15, 12, 0, 0, tzinfo=timezone.utc)


def frozen_clock() -> datetime:
    return FROZEN_NOW


@pytest.fixture
def settings() -> UsherSettings:
    # _env_file=None: never pick up a developer's local .env
    return UsherSettings(_env_file=None, database_url="sqlite://", signing_secret="test-secret")


@pytest.fixture
def engine():
    """
    Fresh in-memory SQLite database per test. StaticPool keeps a single
    connection so every session sees the same database.
    """
    eng = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    yield eng
    eng.dispose()


@pytest.fixture
def migrated_engine(engine, settings):
    MigrationEngine(engine, settings, clock=frozen_clock).migrate_to_latest()
    return engine


@pytest.fixture
def db(migrated_engine, settings):
    session = make_session_factory(migrated_engine, settings)()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def now() -> datetime:
    return FROZEN_NOW


@pytest.fixture
def clock():
    return frozen_clock
