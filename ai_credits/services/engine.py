"""Request-layer entry points, one committed transaction per call."""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Awaitable, Callable, TypeVar

from sqlalchemy.ext.asyncio import AsyncSession

from ai_credits.config import CreditsSettings, get_settings
from ai_credits.db.session import Database
from ai_credits.domain.models import PaymentConfirmed, QuotaDecision, SubscriptionStatus, Tier
from ai_credits.services.accounts import UserAccountStore
from ai_credits.services.feature_gate import FeatureGate
from ai_credits.services.scheduler import ResetScheduler
from ai_credits.services.subscriptions import SubscriptionLifecycle

T = TypeVar("T")


class CreditsEngine:
    """Wraps each operation in its own session, committing on success."""

    def __init__(
        self,
        database: Database,
        settings: CreditsSettings | None = None,
        *,
        scheduler: ResetScheduler | None = None,
    ) -> None:
        self.database = database
        self.settings = settings or get_settings()
        self.scheduler = scheduler

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[AsyncSession]:
        async with self.database.session() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    def _gate(self, session: AsyncSession) -> FeatureGate:
        return FeatureGate(session, self.settings, scheduler=self.scheduler)

    def _lifecycle(self, session: AsyncSession) -> SubscriptionLifecycle:
        return SubscriptionLifecycle(session, self.settings, scheduler=self.scheduler)

    async def ensure_account(self, user_id: str) -> None:
        async with self._transaction() as session:
            await UserAccountStore(session).get_or_create(user_id)

    async def check_quota(self, user_id: str) -> QuotaDecision:
        async with self._transaction() as session:
            return await self._gate(session).check_quota(user_id)

    async def record_usage(self, user_id: str) -> int:
        async with self._transaction() as session:
            return await self._gate(session).record_usage(user_id)

    async def guard(self, user_id: str, operation: Callable[[], Awaitable[T]]) -> T:
        """Check, run ``operation`` with no row lock held, then record usage."""

        async with self._transaction() as session:
            await self._gate(session).ensure_quota(user_id)
        result = await operation()
        async with self._transaction() as session:
            await self._gate(session).record_usage(user_id)
        return result

    async def require_feature(self, user_id: str, feature: str) -> Tier:
        async with self._transaction() as session:
            return await self._gate(session).require_feature(user_id, feature)

    async def get_status(self, user_id: str) -> SubscriptionStatus:
        async with self._transaction() as session:
            return await self._lifecycle(session).get_status(user_id)

    async def handle_payment(self, event: PaymentConfirmed) -> SubscriptionStatus:
        async with self._transaction() as session:
            lifecycle = self._lifecycle(session)
            await lifecycle.apply_payment(event)
            return await lifecycle.get_status(event.user_id)


__all__ = ["CreditsEngine"]
