"""Per-user account persistence with row-locked mutations."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal, Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ai_credits.db.models.core import TIERS, UserAccount
from ai_credits.services.exceptions import AccountNotFound
from ai_credits.utils.datetime import utc_now

CounterKind = Literal["daily", "monthly"]

MUTABLE_FIELDS = frozenset(
    {
        "tier",
        "subscription_status",
        "subscription_start_date",
        "subscription_end_date",
        "payment_reference",
        "daily_usage_count",
        "daily_usage_reset_at",
        "monthly_usage_count",
        "monthly_usage_reset_at",
        "frozen_credits",
    }
)
NON_NEGATIVE_FIELDS = ("daily_usage_count", "monthly_usage_count", "frozen_credits")


class UserAccountStore:
    """All account mutations go through here so each one locks the row first.

    The store never commits; the owning session (request middleware or a
    scheduler callback) decides the transaction boundary.
    """

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, user_id: str, *, for_update: bool = False) -> UserAccount:
        stmt = select(UserAccount).where(UserAccount.id == user_id)
        if for_update:
            stmt = stmt.with_for_update()
        result = await self.session.execute(stmt)
        account = result.scalar_one_or_none()
        if account is None:
            raise AccountNotFound(user_id)
        return account

    async def create(self, user_id: str, *, now: datetime | None = None) -> UserAccount:
        now = now or utc_now()
        account = UserAccount(
            id=user_id,
            tier="free",
            daily_usage_count=0,
            daily_usage_reset_at=now,
            monthly_usage_count=0,
            monthly_usage_reset_at=now,
            frozen_credits=0,
            created_at=now,
            updated_at=now,
        )
        self.session.add(account)
        await self.session.flush()
        return account

    async def get_or_create(self, user_id: str, *, now: datetime | None = None) -> UserAccount:
        try:
            return await self.get(user_id)
        except AccountNotFound:
            return await self.create(user_id, now=now)

    async def increment(self, user_id: str, kind: CounterKind = "daily") -> int:
        """Bump a usage counter and return the post-increment value."""

        account = await self.get(user_id, for_update=True)
        if kind == "daily":
            account.daily_usage_count = (account.daily_usage_count or 0) + 1
            value = account.daily_usage_count
        elif kind == "monthly":
            account.monthly_usage_count = (account.monthly_usage_count or 0) + 1
            value = account.monthly_usage_count
        else:
            raise ValueError(f"Unknown counter kind: {kind!r}")
        account.updated_at = utc_now()
        await self.session.flush()
        return value

    async def reset_daily(self, user_id: str, *, now: datetime | None = None) -> UserAccount:
        now = now or utc_now()
        return await self.update(user_id, daily_usage_count=0, daily_usage_reset_at=now)

    async def reset_monthly(self, user_id: str, *, now: datetime | None = None) -> UserAccount:
        now = now or utc_now()
        return await self.update(user_id, monthly_usage_count=0, monthly_usage_reset_at=now)

    async def update(self, user_id: str, **fields: Any) -> UserAccount:
        unknown = set(fields) - MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"Unknown account fields: {', '.join(sorted(unknown))}")
        for name in NON_NEGATIVE_FIELDS:
            if name in fields and fields[name] is not None and fields[name] < 0:
                raise ValueError(f"{name} must be non-negative")
        if "tier" in fields and fields["tier"] not in TIERS:
            raise ValueError(f"Unknown tier: {fields['tier']!r}")

        account = await self.get(user_id, for_update=True)
        for name, value in fields.items():
            setattr(account, name, value)
        account.updated_at = utc_now()
        await self.session.flush()
        return account

    async def list_all(self) -> Sequence[UserAccount]:
        result = await self.session.execute(select(UserAccount).order_by(UserAccount.id))
        return list(result.scalars())

    async def list_recoverable(self) -> Sequence[UserAccount]:
        """Free accounts that still carry daily usage and so need a reset timer."""

        stmt = (
            select(UserAccount)
            .where(UserAccount.tier == "free", UserAccount.daily_usage_count > 0)
            .order_by(UserAccount.id)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars())

    async def list_paid(self) -> Sequence[UserAccount]:
        stmt = (
            select(UserAccount)
            .where(UserAccount.tier != "free", UserAccount.subscription_end_date.is_not(None))
            .order_by(UserAccount.id)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars())


__all__ = ["CounterKind", "UserAccountStore"]
