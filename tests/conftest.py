"""
Shared test fixtures for pytest
"""

import random
import uuid
from datetime import datetime, timedelta
from decimal import Decimal

import pytest
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import models  # noqa: F401  registers tables on Base.metadata
from database import Base, GameMode, Settings, build_engine
from core.engine import WageringEngine
from core.exceptions import BalanceStoreUnavailable
from services.balance_store import BalanceStore


class FakeClock:
    """Controllable UTC clock for RoundClock."""

    def __init__(self, start=datetime(2026, 1, 1, 12, 0, 0)):
        self.current = start

    def __call__(self):
        return self.current

    def advance(self, seconds):
        self.current += timedelta(seconds=seconds)
        return self.current


class FakeMonotonic:
    def __init__(self):
        self.value = 0.0

    def __call__(self):
        return self.value

    def advance(self, seconds):
        self.value += seconds


def seed_for(number):
    """First seed whose first draw over 0-9 is `number`."""
    return next(s for s in range(10_000) if random.Random(s).randrange(10) == number)


def make_settings(**overrides):
    values = dict(
        database_url="sqlite://",
        start_scheduler=False,
        first_period_number=100,
        lock_buffer_seconds=5,
        stuck_round_alert_seconds=60,
        settlement_timeout_seconds=30.0,
        game_modes=[
            GameMode(id="blitz", name="Blitz", duration_seconds=30),
            GameMode(id="quick", name="Quick", duration_seconds=60),
        ],
    )
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
def settings():
    return make_settings()


@pytest.fixture
def db_engine():
    """In-memory SQLite shared by every session of one test."""
    engine = build_engine("sqlite://", poolclass=StaticPool)
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=db_engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def make_engine(settings, fake_clock, db):
    """Build and start a WageringEngine against the test database."""

    def _make(rng=None, balance_store=None, start=True):
        wagering = WageringEngine(
            settings,
            rng=rng or random.Random(1234),
            now=fake_clock,
            balance_store=balance_store,
        )
        if start:
            wagering.start(db)
        return wagering

    return _make


@pytest.fixture
def wagering(make_engine):
    return make_engine()


@pytest.fixture
def fund(db):
    """Deposit test money and commit."""

    def _fund(wagering, user_id, amount):
        balance = wagering.balance_store.deposit(db, user_id, Decimal(str(amount)), f"seed:{user_id}:{uuid.uuid4()}")
        db.commit()
        return balance

    return _fund


class FlakyBalanceStore(BalanceStore):
    """Fails the n-th WIN credit of a settlement to simulate a crash mid-way."""

    def __init__(self, fail_on_credit=None):
        super().__init__()
        self.fail_on_credit = fail_on_credit
        self.credit_calls = 0

    def apply_delta(self, db, user_id, amount, idempotency_key, tx_type, description=None):
        if amount > 0 and idempotency_key.endswith(":win"):
            self.credit_calls += 1
            if self.fail_on_credit is not None and self.credit_calls == self.fail_on_credit:
                raise BalanceStoreUnavailable(f"simulated outage on credit #{self.credit_calls}")
        return super().apply_delta(db, user_id, amount, idempotency_key, tx_type, description)
