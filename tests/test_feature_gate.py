"""Feature gate: quota checks, usage recording and feature access."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from ai_credits.services.accounts import UserAccountStore
from ai_credits.services.exceptions import FeatureNotAvailable, QuotaExceeded
from ai_credits.services.feature_gate import FeatureGate
from ai_credits.services.scheduler import ResetScheduler
from ai_credits.services.subscriptions import SubscriptionLifecycle
from ai_credits.utils.datetime import ensure_utc

NOW = datetime(2025, 3, 15, 12, 0, tzinfo=timezone.utc)


async def _create(session, user_id: str = "alice"):
    return await UserAccountStore(session).create(user_id, now=NOW - timedelta(hours=2))


@pytest.mark.asyncio
async def test_free_user_gets_three_calls_per_day(session, settings):
    await _create(session)
    gate = FeatureGate(session, settings=settings)

    for expected in (1, 2, 3):
        assert (await gate.check_quota("alice", now=NOW)).allowed is True
        assert await gate.record_usage("alice", now=NOW) == expected

    decision = await gate.check_quota("alice", now=NOW)
    assert decision.allowed is False
    assert decision.remaining == 0
    assert decision.limit == 3


@pytest.mark.asyncio
async def test_check_quota_applies_due_daily_reset(session, settings):
    await _create(session)
    await UserAccountStore(session).update(
        "alice", daily_usage_count=3, daily_usage_reset_at=NOW - timedelta(hours=25)
    )
    gate = FeatureGate(session, settings=settings)

    decision = await gate.check_quota("alice", now=NOW)

    assert decision.allowed is True
    assert decision.used == 0
    assert decision.reset_at == NOW + timedelta(hours=24)
    account = await UserAccountStore(session).get("alice")
    assert ensure_utc(account.daily_usage_reset_at) == NOW


@pytest.mark.asyncio
async def test_basic_user_spills_into_monthly_pool(session, settings):
    await _create(session)
    await SubscriptionLifecycle(session, settings=settings).upgrade("alice", "basic", "pay_1", now=NOW)
    gate = FeatureGate(session, settings=settings)

    for _ in range(4):
        await gate.record_usage("alice", now=NOW)

    account = await UserAccountStore(session).get("alice")
    assert account.daily_usage_count == 3
    assert account.monthly_usage_count == 1
    decision = await gate.check_quota("alice", now=NOW)
    assert decision.pool == "monthly"
    assert decision.remaining == 99


@pytest.mark.asyncio
async def test_basic_boundary_between_pools(session, settings):
    await _create(session)
    await SubscriptionLifecycle(session, settings=settings).upgrade("alice", "basic", "pay_1", now=NOW)
    store = UserAccountStore(session)
    gate = FeatureGate(session, settings=settings)

    await store.update("alice", daily_usage_count=2, monthly_usage_count=100)
    assert (await gate.check_quota("alice", now=NOW)).allowed is True

    await store.update("alice", daily_usage_count=3)
    decision = await gate.check_quota("alice", now=NOW)
    assert decision.allowed is False


@pytest.mark.asyncio
async def test_pro_usage_tracks_monthly_pool(session, settings):
    await _create(session)
    await SubscriptionLifecycle(session, settings=settings).upgrade("alice", "pro", "pay_1", now=NOW)
    gate = FeatureGate(session, settings=settings)

    for _ in range(5):
        await gate.record_usage("alice", now=NOW)

    account = await UserAccountStore(session).get("alice")
    assert account.daily_usage_count == 5
    assert account.monthly_usage_count == 5
    assert (await gate.check_quota("alice", now=NOW)).allowed is True


@pytest.mark.asyncio
async def test_first_free_use_arms_reset_timer(session, database, settings):
    await _create(session)
    scheduler = ResetScheduler(database, settings)
    gate = FeatureGate(session, settings=settings, scheduler=scheduler)
    try:
        await gate.record_usage("alice", now=NOW)
        assert scheduler.active_timers() == ["alice"]

        first_task = scheduler._timers["alice"]
        await gate.record_usage("alice", now=NOW)
        assert scheduler._timers["alice"] is first_task
    finally:
        await scheduler.stop()


@pytest.mark.asyncio
async def test_upgrade_cancels_pending_reset_timer(session, database, settings):
    await _create(session)
    scheduler = ResetScheduler(database, settings)
    gate = FeatureGate(session, settings=settings, scheduler=scheduler)
    try:
        await gate.record_usage("alice", now=NOW)
        await gate.lifecycle.upgrade("alice", "pro", "pay_1", now=NOW)
        assert scheduler.active_timers() == []
    finally:
        await scheduler.stop()


@pytest.mark.asyncio
async def test_guard_records_usage_only_after_success(session, settings):
    await _create(session)
    gate = FeatureGate(session, settings=settings)
    calls = []

    async def categorize():
        calls.append("ok")
        return "work"

    async def broken():
        raise RuntimeError("llm down")

    assert await gate.guard("alice", categorize, now=NOW) == "work"
    with pytest.raises(RuntimeError):
        await gate.guard("alice", broken, now=NOW)

    account = await UserAccountStore(session).get("alice")
    assert calls == ["ok"]
    assert account.daily_usage_count == 1


@pytest.mark.asyncio
async def test_guard_rejects_over_quota_without_calling_operation(session, settings):
    await _create(session)
    await UserAccountStore(session).update("alice", daily_usage_count=3)
    gate = FeatureGate(session, settings=settings)
    called = False

    async def suggest():
        nonlocal called
        called = True

    with pytest.raises(QuotaExceeded) as exc_info:
        await gate.guard("alice", suggest, now=NOW)

    error = exc_info.value
    assert called is False
    assert error.limit == 3
    assert error.used == 3
    assert error.required_tier == "basic"
    assert error.reset_at == NOW - timedelta(hours=2) + timedelta(hours=24)
    assert "3/3" in str(error)


@pytest.mark.asyncio
async def test_require_feature_by_tier(session, settings):
    await _create(session)
    gate = FeatureGate(session, settings=settings)

    assert await gate.require_feature("alice", "basic_tasks", now=NOW) == "free"
    with pytest.raises(FeatureNotAvailable) as exc_info:
        await gate.require_feature("alice", "focus_forecast", now=NOW)
    assert exc_info.value.required_tier == "pro"

    await gate.lifecycle.upgrade("alice", "basic", "pay_1", now=NOW)
    assert await gate.require_feature("alice", "detailed_analytics", now=NOW) == "basic"
    with pytest.raises(FeatureNotAvailable):
        await gate.require_feature("alice", "auto_schedule", now=NOW)


@pytest.mark.asyncio
async def test_require_feature_unknown_name(session, settings):
    await _create(session)
    gate = FeatureGate(session, settings=settings)

    with pytest.raises(ValueError):
        await gate.require_feature("alice", "teleportation", now=NOW)
