"""
Pytest configuration and fixtures for Aqua Forum tests
"""

import os

import httpx
import pytest

from aquaforum.db import close_db, init_db
from aquaforum.services.registry import Services
from tests.helpers import FakeLLM, jpeg_bytes, make_settings

TEST_DB_PATH = "./.test_db.sqlite3"


def _remove_test_db():
    for suffix in ("", "-wal", "-shm"):
        path = TEST_DB_PATH + suffix
        if os.path.exists(path):
            os.remove(path)


@pytest.fixture(scope="function")
async def db_setup():
    """Initialize a fresh SQLite test database for each test."""
    _remove_test_db()
    await init_db()
    try:
        yield
    finally:
        await close_db()
        _remove_test_db()


@pytest.fixture
def fake_llm():
    return FakeLLM()


@pytest.fixture
def settings(tmp_path):
    return make_settings(tmp_path)


@pytest.fixture
async def services(db_setup, settings, fake_llm, tmp_path):
    http = httpx.AsyncClient(transport=httpx.MockTransport(fake_llm))
    svc = Services.from_settings(settings, http=http)
    svc.worker.temp_dir = tmp_path
    await svc.start()
    try:
        yield svc
    finally:
        await svc.close()


@pytest.fixture
async def client(services):
    from aquaforum.main import app

    # ASGITransport skips the lifespan, so the test container is installed directly
    app.state.services = services
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c


@pytest.fixture
def image_file(tmp_path):
    path = tmp_path / "tank.jpg"
    path.write_bytes(jpeg_bytes())
    return path
