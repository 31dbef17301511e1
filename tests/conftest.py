import os

# The engine in oyadeki.database is built at import time.
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["DEDUP_BACKEND"] = "memory"
os.environ.pop("GEMINI_API_KEY", None)
os.environ.pop("LINE_CHANNEL_ACCESS_TOKEN", None)

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import oyadeki.models  # noqa: F401
from oyadeki.database import Base
from oyadeki.services.dedup import reset_dedup_state


@pytest.fixture
def engine():
    """In-memory SQLite shared by every connection of one test."""
    engine = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False)


@pytest.fixture
def db_session(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture(autouse=True)
def _reset_dedup():
    reset_dedup_state()
    yield
    reset_dedup_state()
