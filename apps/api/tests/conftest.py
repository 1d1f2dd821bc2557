"""
Pytest configuration and fixtures

Tests run against an in-memory SQLite database (single shared connection).
Every test gets a session whose work is rolled back afterwards, so nothing
leaks between tests.
"""
import pytest
import sys
import os

# In-memory database before anything imports core.database
os.environ["DATABASE_URL"] = "sqlite://"
os.environ.setdefault("LOG_FORMAT", "text")

# Add the parent directory to the path so we can import from services
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from sqlalchemy.orm import Session
from core.database import Base, engine
import models  # noqa: F401  (registers tables)
from tests.signal_helpers import NOW, make_baseline, make_signals, wearable_history


@pytest.fixture(scope="session", autouse=True)
def _create_schema():
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture(scope="function")
def db_session():
    """
    Database session with transactional rollback.

    All changes made during the test are rolled back after the test completes.
    """
    connection = engine.connect()
    transaction = connection.begin()
    session = Session(bind=connection)

    yield session

    session.close()
    transaction.rollback()
    connection.close()


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def ready_baseline():
    return make_baseline()


@pytest.fixture
def signals_factory():
    return make_signals


@pytest.fixture
def history_rows():
    return wearable_history()
