"""Pytest configuration and fixtures."""

import os

import pytest
import pytest_asyncio
from fastapi.testclient import TestClient

# Set test environment variables before imports
os.environ["DATABASE_PATH"] = ":memory:"
os.environ["SOURCE_CALENDAR_IDS"] = ""
os.environ["TARGET_CALENDAR_ID"] = ""
os.environ.pop("API_TOKEN", None)

from tests.fake_calendar import FakeCalendar, InMemoryLock, ManualClock, RecordingProgress  # noqa: E402


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def fake_calendar():
    return FakeCalendar()


@pytest.fixture
def lock():
    return InMemoryLock()


@pytest.fixture
def progress():
    return RecordingProgress()


@pytest_asyncio.fixture
async def test_db():
    """Create a test database."""
    from app.database import get_database, close_database, init_schema
    import app.database as db_module

    # Reset the global connection
    db_module._db_connection = None

    # Create in-memory database
    db = await get_database()
    await init_schema(db)

    yield db

    await close_database()
    db_module._db_connection = None


@pytest.fixture
def client():
    """Create a test client for the FastAPI app."""
    import app.database as db_module
    from app.main import app

    db_module._db_connection = None

    with TestClient(app) as c:
        yield c

    db_module._db_connection = None
