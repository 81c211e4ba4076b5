"""Pytest configuration: every test gets its own uploads folder and app."""

import pytest
from fastapi.testclient import TestClient

from filedrop.config import Settings
from filedrop.limiter import limiter


@pytest.fixture(autouse=True)
def _reset_rate_limits():
    """Rate limit counters are process-wide; start each test from zero."""
    limiter.reset()
    yield


@pytest.fixture
def uploads(tmp_path):
    """Existing, empty uploads folder."""
    folder = tmp_path / "uploads"
    folder.mkdir()
    return folder


@pytest.fixture
def settings(uploads) -> Settings:
    """Settings pointing at the test uploads folder, auth disabled."""
    return Settings(uploads_folder=uploads, enable_auth=False, public_url="")


@pytest.fixture
def client(settings):
    """TestClient as context manager so lifespan runs (hash index load/close)."""
    from filedrop.main import create_app

    with TestClient(create_app(settings)) as c:
        yield c
