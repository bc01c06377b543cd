# tests/conftest.py
"""
Fixtures and test setup for the Pytest suite.
"""

import os
from datetime import datetime, timedelta, timezone

import pytest

# Set test environment variables BEFORE any application code is imported.
os.environ["DATABASE_URL"] = "sqlite:///./test.db"
os.environ["ENV"] = "test"
os.environ["API_KEY"] = "test_api_key"
os.environ["LOCAL_TIMEZONE"] = "UTC"
os.environ["JWT_SECRET"] = "test-secret"

from tradeledger.infrastructure.db.base import build_engine, build_session_factory, create_tables
from tradeledger.application.services.ledger_service import AccountLedger

NOW = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)


class FrozenClock:
    """Deterministic clock for the ledger; advance it explicitly."""

    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture(scope="function")
def db_engine(tmp_path):
    """A fresh file-backed SQLite database per test (file-backed so sessions use separate connections)."""
    engine = build_engine(f"sqlite:///{tmp_path / 'ledger.db'}")
    create_tables(engine)
    yield engine
    engine.dispose()


@pytest.fixture(scope="function")
def session_factory(db_engine):
    return build_session_factory(db_engine)


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def ledger(session_factory, clock) -> AccountLedger:
    return AccountLedger(session_factory=session_factory, clock=clock, max_attempts=3)


@pytest.fixture
def onboard(ledger):
    """Coroutine factory creating and onboarding an account."""
    async def _onboard(user_id: str = "u1", balance="1000", currency: str = "EUR"):
        await ledger.ensure_account(user_id)
        return await ledger.save_onboarding(user_id, balance, currency)
    return _onboard
