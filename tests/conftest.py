"""Shared fixtures: every test gets its own directories, store and clock."""

import threading

import pytest
from datetime import datetime, timedelta
from fastapi.testclient import TestClient

from sharevault.auth import AuthHandler
from sharevault.config import Settings
from sharevault.finalizer import Finalizer
from sharevault.main import create_app
from sharevault.models import SessionStore
from sharevault.notifications import Notifier
from sharevault.persistence import InMemoryFileRepository
from sharevault.reaper import Reaper
from sharevault.receiver import ChunkReceiver
from sharevault.schemas import User


class FakeClock:
    def __init__(self, start: datetime = datetime(2025, 1, 1, 12, 0, 0)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class RecordingNotifier(Notifier):
    def __init__(self):
        self.calls = []
        self.called = threading.Event()

    def notify_large_upload(self, user, filename, size, file_id, sha1):
        self.calls.append((user.username, filename, size, file_id, sha1))
        self.called.set()


@pytest.fixture
def settings(tmp_path):
    return Settings(
        SECRET_KEY="test-secret",
        TEMP_UPLOAD_DIR=str(tmp_path / "uploads" / ".chunks"),
        PERM_UPLOAD_DIR=str(tmp_path / "uploads"),
        CLEANUP_INTERVAL=600,
        STALE_THRESHOLD=3600,
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return SessionStore()


@pytest.fixture
def repository():
    return InMemoryFileRepository()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def receiver(store, settings, clock):
    return ChunkReceiver(store, settings, clock)


@pytest.fixture
def finalizer(store, repository, notifier, settings, clock):
    return Finalizer(store, repository, notifier, settings, clock)


@pytest.fixture
def reaper(store, settings, clock):
    return Reaper(store, settings, clock)


@pytest.fixture
def alice():
    return User(username="alice", email="alice@example.com")


@pytest.fixture
def bob():
    return User(username="bob", email="bob@example.com")


@pytest.fixture
def app(settings, repository, notifier, clock):
    return create_app(settings, repository=repository, notifier=notifier, clock=clock)


@pytest.fixture
def client(app):
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def auth_headers(settings):
    handler = AuthHandler(settings)

    def make(username: str = "alice", email: str = None):
        return {"Authorization": f"Bearer {handler.create_access_token(username, email)}"}

    return make
