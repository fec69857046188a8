"""Gate AI-consuming operations behind the tier quota."""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Awaitable, Callable, TypeVar

from sqlalchemy.ext.asyncio import AsyncSession

from ai_credits.config import CreditsSettings, get_settings
from ai_credits.domain.models import QuotaDecision, Tier
from ai_credits.logging import logger
from ai_credits.services.accounts import UserAccountStore
from ai_credits.services.exceptions import FeatureNotAvailable, QuotaExceeded
from ai_credits.services.quota_policy import (
    daily_reset_due,
    effective_tier,
    evaluate,
    monthly_reset_due,
)
from ai_credits.services.scheduler import ResetScheduler
from ai_credits.services.subscriptions import SubscriptionLifecycle
from ai_credits.utils.datetime import month_start, utc_now

T = TypeVar("T")

ALL_TIERS: tuple[Tier, ...] = ("free", "basic", "pro")
PAID: tuple[Tier, ...] = ("basic", "pro")
PRO_ONLY: tuple[Tier, ...] = ("pro",)

FEATURE_TIERS: dict[str, tuple[Tier, ...]] = {
    "basic_tasks": ALL_TIERS,
    "manual_prioritization": ALL_TIERS,
    "basic_streaks": ALL_TIERS,
    "unlimited_tasks": PAID,
    "advanced_task_management": PAID,
    "detailed_analytics": PAID,
    "smart_timing_analysis": PAID,
    "priority_email_support": PAID,
    "unlimited_ai_calls": PRO_ONLY,
    "focus_forecast": PRO_ONLY,
    "auto_schedule": PRO_ONLY,
    "advanced_integrations": PRO_ONLY,
    "priority_support": PRO_ONLY,
    "custom_workflows": PRO_ONLY,
}


class FeatureGate:
    def __init__(
        self,
        session: AsyncSession,
        settings: CreditsSettings | None = None,
        *,
        scheduler: ResetScheduler | None = None,
    ) -> None:
        self.session = session
        self.settings = settings or get_settings()
        self.scheduler = scheduler
        self.store = UserAccountStore(session)
        self.lifecycle = SubscriptionLifecycle(session, self.settings, scheduler=scheduler)

    @property
    def reset_interval(self) -> timedelta:
        if self.scheduler is not None:
            return self.scheduler.interval
        return self.settings.scheduler.reset_interval

    async def check_quota(self, user_id: str, *, now: datetime | None = None) -> QuotaDecision:
        now = now or utc_now()
        account = await self.lifecycle.get_effective_account(user_id, now=now)
        if daily_reset_due(account, now, self.reset_interval):
            account = await self.store.reset_daily(user_id, now=now)
        if monthly_reset_due(account, now):
            account = await self.store.reset_monthly(user_id, now=month_start(now))
        return evaluate(account, now, self.settings.quotas, interval=self.reset_interval)

    async def record_usage(self, user_id: str, *, now: datetime | None = None) -> int:
        """Attribute one AI operation; returns the post-increment counter value."""

        now = now or utc_now()
        account = await self.lifecycle.get_effective_account(user_id, now=now)
        tier = effective_tier(account, now)

        if tier == "basic" and (account.daily_usage_count or 0) >= self.settings.quotas.basic_daily_limit:
            value = await self.store.increment(user_id, "monthly")
        else:
            value = await self.store.increment(user_id, "daily")
            if tier == "pro":
                await self.store.increment(user_id, "monthly")
            elif tier == "free" and value == 1 and self.scheduler is not None:
                self.scheduler.arm(user_id)

        logger.info("ai_usage_recorded", user_id=user_id, tier=tier, counter=value)
        return value

    async def ensure_quota(self, user_id: str, *, now: datetime | None = None) -> QuotaDecision:
        decision = await self.check_quota(user_id, now=now)
        if not decision.allowed:
            logger.info(
                "ai_quota_exceeded",
                user_id=user_id,
                tier=decision.tier,
                used=decision.used,
                limit=decision.limit,
            )
            raise QuotaExceeded(decision)
        return decision

    async def guard(
        self,
        user_id: str,
        operation: Callable[[], Awaitable[T]],
        *,
        now: datetime | None = None,
    ) -> T:
        """Run ``operation`` only within quota and charge it once it succeeds."""

        await self.ensure_quota(user_id, now=now)
        result = await operation()
        await self.record_usage(user_id, now=now)
        return result

    async def require_feature(
        self, user_id: str, feature: str, *, now: datetime | None = None
    ) -> Tier:
        allowed_tiers = FEATURE_TIERS.get(feature)
        if allowed_tiers is None:
            raise ValueError(f"Unknown feature: {feature!r}")
        now = now or utc_now()
        account = await self.lifecycle.get_effective_account(user_id, now=now)
        tier = effective_tier(account, now)
        if tier not in allowed_tiers:
            raise FeatureNotAvailable(feature, tier, allowed_tiers[0])
        return tier


__all__ = ["FEATURE_TIERS", "FeatureGate"]
