"""
SLP SAFETY — Test Infrastructure (conftest.py)
===============================================
Provides:
  - Per-test sqlite database (config, audit log, run history)
  - In-memory record store installed as the process store
  - Recording fake delivery channel
  - Fake clock / sleep for retry and throttle timing
  - FastAPI TestClient and sign-in helper
"""

import os
import sys
import tempfile
from datetime import datetime, timezone
from typing import List, Optional

import pytest

# Ensure project root is on path
ROOT_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, ROOT_DIR)

# Keep the import-time database (main.py reads the session secret) out of the repo.
os.environ.setdefault("SAFETY_DB_PATH", os.path.join(tempfile.mkdtemp(prefix="slp_safety_"), "safety_test.db"))

# Fixed reference instant used across the suite: Monday 2026-01-12 15:00 UTC.
NOW = datetime(2026, 1, 12, 15, 0, tzinfo=timezone.utc)

ENV_VARS = ("SUPABASE_URL", "SUPABASE_KEY", "RESEND_API_KEY", "SAFETY_SESSION_SECRET")


# ============================================================================
# Fakes
# ============================================================================

class FakeClock:
    """Monotonic clock that only moves when sleep() is called."""

    def __init__(self, start: float = 1000.0):
        self.now = start
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class FakeChannel:
    """Delivery channel that records sends.

    ``fail_for`` names companies (matched against the subject) whose sends
    always fail; ``fail_times`` fails that many sends before succeeding.
    """

    channel_name = "email"

    def __init__(self, fail_for=(), fail_times: int = 0):
        self.fail_for = tuple(fail_for)
        self.fail_times = fail_times
        self.sent = []
        self.attempts = 0

    def send(self, recipients, subject, body_html, body_text=None, **kwargs):
        from app.reporting.delivery import DeliveryError, DeliveryResult

        self.attempts += 1
        if any(name in subject for name in self.fail_for):
            raise DeliveryError(f"provider rejected {subject}")
        if self.fail_times > 0:
            self.fail_times -= 1
            raise DeliveryError("HTTP 503: service unavailable")
        self.sent.append({
            "recipients": list(recipients),
            "subject": subject,
            "html": body_html,
            "text": body_text,
        })
        return DeliveryResult(
            success=True,
            recipients=list(recipients),
            channel=self.channel_name,
            message_id=f"msg-{len(self.sent)}",
        )


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture(autouse=True)
def test_db(tmp_path, monkeypatch):
    """Point the reporting database at a fresh file for every test."""
    from app.reporting import models
    from app.reporting.config import ReportingConfig

    for var in ENV_VARS:
        monkeypatch.delenv(var, raising=False)

    db_path = tmp_path / "safety_test.db"
    monkeypatch.setattr(models, "DB_PATH", db_path)
    monkeypatch.setattr(models, "_SCHEMA_READY_FOR", None)
    ReportingConfig.reset_cache()
    yield db_path
    ReportingConfig.reset_cache()


@pytest.fixture
def store():
    """Empty in-memory record store installed as the process store."""
    from app.datastore import InMemoryRecordStore, set_store

    s = InMemoryRecordStore()
    set_store(s)
    yield s
    set_store(None)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def channel():
    return FakeChannel()


@pytest.fixture
def engine(store, channel, clock):
    """ReportEngine over the in-memory store and fake channel, installed as the singleton."""
    from app.reporting.engine import ReportEngine, set_engine

    e = ReportEngine(store=store, channel=channel, sleep=clock.sleep, clock=clock)
    set_engine(e)
    yield e
    set_engine(None)


@pytest.fixture
def app(engine):
    import main
    return main.app


@pytest.fixture
def client(app):
    """FastAPI TestClient; startup hooks are not run so the scheduler stays idle."""
    from starlette.testclient import TestClient
    return TestClient(app, raise_server_exceptions=False)


def sign_in(client, store, email: str, password: str = "pw123456"):
    """Register *email* in the fake auth backend and post the login form."""
    store.users[email.lower()] = password
    return client.post(
        "/login",
        data={"email": email, "password": password},
        follow_redirects=False,
    )


def iso(dt: datetime) -> str:
    return dt.isoformat()


def make_records(company: str = "Acme", **kwargs):
    from app.metrics import CompanyRecords
    return CompanyRecords(company_name=company, **kwargs)


def config_set(key: str, value, user: Optional[str] = "test"):
    from app.reporting.config import set_config
    set_config(key, value, user=user)
