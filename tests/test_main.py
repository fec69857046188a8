"""Tests for logging, configuration and async main bootstrap."""

from __future__ import annotations

import asyncio

import pytest
import structlog

from ai_credits import main as main_module
from ai_credits.config import CreditsSettings
from ai_credits.logging import configure_logging


def test_configure_logging_outputs_json(capsys):
    configure_logging("debug")
    logger = structlog.get_logger()
    logger.info("unit-test", foo="bar")
    out = capsys.readouterr().out
    assert "unit-test" in out
    assert "foo" in out


def test_settings_from_environment(monkeypatch):
    monkeypatch.setenv("CREDITS_ENVIRONMENT", "prod")
    monkeypatch.setenv("CREDITS_LOG_LEVEL", " warning ")
    monkeypatch.setenv("CREDITS_QUOTAS__FREE_DAILY_LIMIT", "5")
    monkeypatch.setenv("CREDITS_SCHEDULER__RESET_INTERVAL_HOURS", "12")

    settings = CreditsSettings(_env_file=None)

    assert settings.environment == "prod"
    assert settings.log_level == "WARNING"
    assert settings.quotas.free_daily_limit == 5
    assert settings.quotas.basic_monthly_limit == 100
    assert settings.subscriptions.subscription_duration_days == 30
    assert settings.scheduler.reset_interval.total_seconds() == 12 * 3600


class DummyEngineDatabase:
    def __init__(self, database) -> None:
        self._database = database
        self.created = False
        self.disposed = False

    def session(self):
        return self._database.session()

    async def create_all(self) -> None:
        self.created = True

    async def dispose(self) -> None:
        self.disposed = True


@pytest.mark.asyncio
async def test_main_bootstraps_and_shuts_down(monkeypatch, database):
    settings = CreditsSettings(_env_file=None)
    holder = {}

    def fake_database(settings):
        holder["db"] = DummyEngineDatabase(database)
        return holder["db"]

    monkeypatch.setattr(main_module, "get_settings", lambda: settings)
    monkeypatch.setattr(main_module, "Database", fake_database)

    stop_event = asyncio.Event()
    stop_event.set()
    await main_module.main(stop_event)

    assert holder["db"].created
    assert holder["db"].disposed
    assert database.opened >= 1
