"""Subscription lifecycle: upgrades, lazy expiry and credit freezing."""

from __future__ import annotations

import math
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ai_credits.config import CreditsSettings, get_settings
from ai_credits.db.models.core import PAID_TIERS, SubscriptionPayment, UserAccount
from ai_credits.domain.models import PaymentConfirmed, SubscriptionStatus
from ai_credits.logging import logger
from ai_credits.services.accounts import UserAccountStore
from ai_credits.services.exceptions import SubscriptionError
from ai_credits.services.quota_policy import (
    effective_tier,
    is_expired,
    is_subscription_active,
    monthly_reset_due,
)
from ai_credits.utils.datetime import ensure_utc, utc_now

if TYPE_CHECKING:
    from ai_credits.services.scheduler import ResetScheduler


class SubscriptionLifecycle:
    def __init__(
        self,
        session: AsyncSession,
        settings: CreditsSettings | None = None,
        *,
        scheduler: ResetScheduler | None = None,
    ) -> None:
        self.session = session
        self.settings = settings or get_settings()
        self.store = UserAccountStore(session)
        self.scheduler = scheduler

    async def upgrade(
        self,
        user_id: str,
        target_tier: str,
        payment_ref: str,
        *,
        now: datetime | None = None,
    ) -> UserAccount:
        """Activate a paid plan; the payment is assumed to be verified upstream."""

        if target_tier not in PAID_TIERS:
            raise SubscriptionError(f"Cannot upgrade to {target_tier!r}.")

        now = now or utc_now()
        account = await self.store.get(user_id, for_update=True)
        previous_tier = account.tier
        duration = timedelta(days=self.settings.subscriptions.subscription_duration_days)
        fields = {
            "tier": target_tier,
            "subscription_status": "active",
            "subscription_start_date": now,
            "subscription_end_date": now + duration,
            "payment_reference": payment_ref,
            "daily_usage_count": 0,
            "daily_usage_reset_at": now,
            "monthly_usage_count": 0,
            "monthly_usage_reset_at": now,
        }

        restored = forfeited = 0
        if account.frozen_credits:
            if target_tier == "pro":
                # Used-count is set so the remaining monthly pool equals the frozen amount.
                restored = account.frozen_credits
                pool = self.settings.quotas.pro_monthly_pool
                fields["monthly_usage_count"] = max(0, pool - restored)
            else:
                forfeited = account.frozen_credits
            fields["frozen_credits"] = 0

        account = await self.store.update(user_id, **fields)
        if self.scheduler is not None:
            self.scheduler.cancel(user_id)

        logger.info(
            "subscription_upgraded",
            user_id=user_id,
            from_tier=previous_tier,
            to_tier=target_tier,
            payment_reference=payment_ref,
            expires_at=account.subscription_end_date,
            restored_credits=restored,
            forfeited_credits=forfeited,
        )
        return account

    async def apply_payment(
        self, event: PaymentConfirmed, *, now: datetime | None = None
    ) -> UserAccount:
        """Upgrade from a confirmed payment; redelivered references are no-ops."""

        now = now or utc_now()
        stmt = (
            select(SubscriptionPayment)
            .where(SubscriptionPayment.payment_reference == event.payment_reference)
            .with_for_update()
        )
        result = await self.session.execute(stmt)
        if result.scalar_one_or_none() is not None:
            logger.info(
                "payment_already_applied",
                user_id=event.user_id,
                payment_reference=event.payment_reference,
            )
            return await self.store.get(event.user_id)

        account = await self.upgrade(
            event.user_id, event.plan_type, event.payment_reference, now=now
        )
        self.session.add(
            SubscriptionPayment(
                payment_reference=event.payment_reference,
                user_id=event.user_id,
                plan_type=event.plan_type,
                applied_at=now,
            )
        )
        await self.session.flush()
        return account

    async def check_and_expire(self, user_id: str, *, now: datetime | None = None) -> bool:
        now = now or utc_now()
        account = await self.store.get(user_id, for_update=True)
        if not is_expired(account, now):
            return False
        await self.downgrade(user_id, now=now)
        return True

    async def downgrade(self, user_id: str, *, now: datetime | None = None) -> UserAccount:
        now = now or utc_now()
        account = await self.store.get(user_id, for_update=True)
        previous_tier = account.tier
        frozen = (account.frozen_credits or 0) if previous_tier == "free" else 0
        if previous_tier == "pro":
            used = 0 if monthly_reset_due(account, now) else account.monthly_usage_count or 0
            frozen = max(0, self.settings.quotas.pro_monthly_pool - used)

        free_limit = self.settings.quotas.free_daily_limit
        account = await self.store.update(
            user_id,
            tier="free",
            subscription_status=None,
            subscription_start_date=None,
            subscription_end_date=None,
            payment_reference=None,
            frozen_credits=frozen,
            daily_usage_count=min(account.daily_usage_count or 0, free_limit),
        )
        logger.info(
            "subscription_downgraded",
            user_id=user_id,
            from_tier=previous_tier,
            frozen_credits=frozen,
            daily_usage=account.daily_usage_count,
        )

        if self.scheduler is not None and account.daily_usage_count > 0:
            reset_at = ensure_utc(account.daily_usage_reset_at) or now
            self.scheduler.arm(user_id, reset_at + self.scheduler.interval - now)
        return account

    async def sweep_expired(self, *, now: datetime | None = None) -> int:
        now = now or utc_now()
        downgraded = 0
        for account in await self.store.list_paid():
            if await self.check_and_expire(account.id, now=now):
                downgraded += 1
        logger.info("expired_subscriptions_processed", count=downgraded)
        return downgraded

    async def get_effective_account(
        self, user_id: str, *, now: datetime | None = None
    ) -> UserAccount:
        """Single read path: expiry is always applied before data is returned."""

        await self.check_and_expire(user_id, now=now)
        return await self.store.get(user_id)

    async def get_status(self, user_id: str, *, now: datetime | None = None) -> SubscriptionStatus:
        now = now or utc_now()
        account = await self.get_effective_account(user_id, now=now)
        active = is_subscription_active(account, now)
        end = ensure_utc(account.subscription_end_date)
        days_remaining = 0
        if active and end is not None:
            days_remaining = math.ceil((end - now).total_seconds() / 86400)
        return SubscriptionStatus(
            tier=effective_tier(account, now),
            is_active=active,
            subscription_end_date=end,
            days_remaining=days_remaining,
            daily_usage=account.daily_usage_count or 0,
            monthly_usage=0 if monthly_reset_due(account, now) else account.monthly_usage_count or 0,
            frozen_credits=account.frozen_credits or 0,
        )


__all__ = ["SubscriptionLifecycle"]
