"""Shared pytest fixtures for database-backed service tests."""

from __future__ import annotations

from contextlib import asynccontextmanager
from types import SimpleNamespace

import pytest
import pytest_asyncio
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from ai_credits.config import QuotaSettings, SchedulerSettings, SubscriptionSettings
from ai_credits.db.base import Base

class _AsyncSessionWrapper:
    def __init__(self, sync_session) -> None:
        self._sync = sync_session

    async def execute(self, *args, **kwargs):
        return self._sync.execute(*args, **kwargs)

    async def get(self, *args, **kwargs):
        return self._sync.get(*args, **kwargs)

    def add(self, obj) -> None:
        self._sync.add(obj)

    def add_all(self, objs) -> None:
        self._sync.add_all(objs)

    async def flush(self) -> None:
        self._sync.flush()

    async def commit(self) -> None:
        self._sync.commit()

    async def rollback(self) -> None:
        self._sync.rollback()

    async def close(self) -> None:
        self._sync.close()

class DummyDatabase:
    """Hands out the shared test session the way ``Database.session`` does."""

    def __init__(self, session) -> None:
        self._session = session
        self.opened = 0

    @asynccontextmanager
    async def session(self):
        self.opened += 1
        yield self._session

def stub_settings(**scheduler_overrides) -> SimpleNamespace:
    return SimpleNamespace(
        quotas=QuotaSettings(),
        subscriptions=SubscriptionSettings(subscription_duration_days=30),
        scheduler=SchedulerSettings(**scheduler_overrides),
    )

@pytest.fixture
def settings() -> SimpleNamespace:
    return stub_settings()

@pytest_asyncio.fixture
async def session():
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, expire_on_commit=False)
    sync_session = SessionLocal()
    try:
        yield _AsyncSessionWrapper(sync_session)
    finally:
        sync_session.close()
        engine.dispose()

@pytest.fixture
def database(session) -> DummyDatabase:
    return DummyDatabase(session)

@pytest.fixture
def spy_arm(monkeypatch):
    """Record every ``arm`` call on a scheduler while still arming it."""

    def install(scheduler):
        calls = []
        original = scheduler.arm

        def arm(user_id, delay=None):
            calls.append((user_id, delay))
            original(user_id, delay)

        monkeypatch.setattr(scheduler, "arm", arm)
        return calls

    return install
