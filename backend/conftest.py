"""Pytest configuration: set test env before any app imports so storage, DB and JWT use test values."""

import os
import tempfile

import pytest
import pytest_asyncio

# Set before syncvault.config is used so settings point at throwaway paths
_tmp = tempfile.mkdtemp(prefix="syncvault_test_")
os.environ.setdefault("SYNCVAULT_STORAGE_BASE_PATH", os.path.join(_tmp, "storage"))
os.environ.setdefault("SYNCVAULT_DB_PATH", os.path.join(_tmp, "test.db"))
os.environ.setdefault("SYNCVAULT_JWT_SECRET", "test-jwt-secret-at-least-32-characters-long")


@pytest.fixture
def store(tmp_path):
    """FileStore rooted in a fresh temp directory."""
    from syncvault.files.storage import FileStore
    return FileStore(tmp_path / "storage")


@pytest_asyncio.fixture
async def broadcaster():
    """Started ChangeBroadcaster, stopped after the test."""
    from syncvault.notify.broadcaster import ChangeBroadcaster
    b = ChangeBroadcaster(queue_size=10)
    await b.start()
    yield b
    await b.stop()


@pytest_asyncio.fixture
async def database(tmp_path):
    """Fresh SQLite database with tables created."""
    from syncvault.db.session import Database
    db = Database(tmp_path / "checkpoints.db")
    await db.init()
    yield db
    await db.dispose()


@pytest.fixture
def make_token():
    """Return a function issuing an access token for a user id."""
    from syncvault.auth.jwt import create_access_token
    return create_access_token


@pytest.fixture
def client(tmp_path, monkeypatch):
    """TestClient for the app. Used as context manager so lifespan runs (DB init, broadcaster start)."""
    from fastapi.testclient import TestClient
    from syncvault.main import app

    monkeypatch.setenv("SYNCVAULT_STORAGE_BASE_PATH", str(tmp_path / "storage"))
    monkeypatch.setenv("SYNCVAULT_DB_PATH", str(tmp_path / "api.db"))
    with TestClient(app) as c:
        yield c


@pytest.fixture
def auth_headers(make_token):
    """Bearer header for alice@example.com."""
    return {"Authorization": f"Bearer {make_token('alice@example.com')}"}
