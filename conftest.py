"""
Pytest configuration and shared fixtures.

Test settings point at a throwaway SQLite file. They must be in the
environment before any violet_api import, since settings and the engine are
created at import time.
"""

import os
import tempfile

import pytest

TEST_DB_PATH = os.path.join(tempfile.gettempdir(), "violet_api_test.db")

os.environ["DATABASE_URL"] = f"sqlite:///{TEST_DB_PATH}"
os.environ.setdefault("LOG_LEVEL", "WARNING")
os.environ["MESSAGES_LIMIT"] = "50"
os.environ["HCAPTCHA_REQUIRED"] = "false"
os.environ["SCHEMA_DESTRUCTIVE_REPAIR"] = "true"

# Clear settings cache before any app imports to ensure test env vars are used
from violet_api.config import get_settings
get_settings.cache_clear()

from fastapi.testclient import TestClient
from sqlalchemy import text

from violet_api.main import app
from violet_api.storage import Base, engine


SMALL_PNG = (
    "data:image/png;base64,"
    "iVBORw0KGgoAAAANSUhEUgAAAAEAAAABCAYAAAAfFcSJAAAADUlEQVR42mNkYPhfDwAChwGA60e6kgAAAABJRU5ErkJggg=="
)


def drop_all_tables() -> None:
    """Drop model tables and anything a test created by hand."""
    Base.metadata.drop_all(bind=engine)
    with engine.begin() as conn:
        conn.execute(text("DROP TABLE IF EXISTS carousel_images"))
        conn.execute(text("DROP TABLE IF EXISTS messages"))
        conn.execute(text("DROP TABLE IF EXISTS mensajes_captcha"))


@pytest.fixture(scope="function")
def client():
    """Test client with a fresh schema; the lifespan reconciles on entry."""
    drop_all_tables()

    with TestClient(app) as test_client:
        yield test_client

    drop_all_tables()


@pytest.fixture
def png_data_url() -> str:
    return SMALL_PNG
