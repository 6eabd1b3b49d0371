from datetime import datetime, timezone
from pathlib import Path
import os
import tempfile
import uuid
import pytest

# point the app at throwaway storage before anything imports certano
_TMP = Path(tempfile.mkdtemp(prefix="certano-tests-"))
os.environ.setdefault("DATABASE_URL", f"sqlite:///{_TMP / 'test.db'}")
os.environ.setdefault("STATE_DIR", str(_TMP / "state"))
os.environ.setdefault("ENV", "dev")

from certano.gamification import InMemoryStatePort, QuizStatsStore  # noqa: E402


class FixedClock:
    """Callable clock that tests can move forward."""
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture
def clock():
    # a Wednesday
    return FixedClock(datetime(2025, 3, 12, 10, 0, tzinfo=timezone.utc))


@pytest.fixture
def port():
    return InMemoryStatePort()


@pytest.fixture
def store(port, clock):
    return QuizStatsStore(port, clock=clock)


@pytest.fixture
def client():
    from fastapi.testclient import TestClient
    from certano.main import app
    return TestClient(app)


@pytest.fixture
def auth_headers(client):
    """Register a fresh user and return (user_id, email, headers)."""
    email = f"user-{uuid.uuid4().hex[:8]}@example.com"
    r = client.post('/auth/register', json={'email': email, 'password': 'pass123'})
    assert r.status_code == 200
    user_id = r.json()['id']
    login = client.post('/auth/login', json={'email': email, 'password': 'pass123'})
    assert login.status_code == 200
    token = login.json()['access_token']
    return user_id, email, {'Authorization': f'Bearer {token}'}
