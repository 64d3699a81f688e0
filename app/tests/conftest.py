"""Shared fixtures: a throwaway SQLite store and an authenticated client."""

import os
import tempfile

# Settings are read at import time, so configure the environment first
_DB_PATH = os.path.join(tempfile.mkdtemp(prefix="health-sync-tests-"), "health_sync.db")
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{_DB_PATH}"
os.environ["API_KEY"] = "test-api-key"
os.environ["INGEST_RETRY_BACKOFF_SECONDS"] = "0"

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402
from sqlalchemy import create_engine  # noqa: E402

from app.database import AsyncSessionLocal, Base  # noqa: E402
from app.main import app  # noqa: E402

API_KEY = "test-api-key"

# Schema resets go through the blocking driver so they never touch an event loop
_schema_engine = create_engine(f"sqlite:///{_DB_PATH}")


@pytest.fixture(autouse=True)
def clean_database():
    """Every test starts from empty tables."""
    Base.metadata.drop_all(_schema_engine)
    Base.metadata.create_all(_schema_engine)
    yield


@pytest.fixture
def client():
    with TestClient(app) as c:
        yield c


@pytest.fixture
def auth_headers():
    return {"X-API-Key": API_KEY}


@pytest_asyncio.fixture
async def db_session():
    async with AsyncSessionLocal() as session:
        yield session


@pytest.fixture
def device_info():
    return {"deviceModel": "iPhone", "osVersion": "17.4", "appVersion": "1.0"}
