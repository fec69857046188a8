"""SQLAlchemy models for accounts and applied payments."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, Enum, ForeignKey, Integer, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from ai_credits.db.base import Base, TimestampMixin
from ai_credits.utils.datetime import utc_now

TIERS = ("free", "basic", "pro")
PAID_TIERS = ("basic", "pro")


class UserAccount(TimestampMixin, Base):
    __tablename__ = "user_accounts"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    tier: Mapped[str] = mapped_column(
        Enum(*TIERS, name="user_tier"), default="free", nullable=False
    )
    subscription_status: Mapped[str | None] = mapped_column(
        Enum("active", name="subscription_status")
    )
    subscription_start_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    subscription_end_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    payment_reference: Mapped[str | None] = mapped_column(String(128))

    daily_usage_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    daily_usage_reset_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, nullable=False
    )
    monthly_usage_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    monthly_usage_reset_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, nullable=False
    )
    frozen_credits: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    payments: Mapped[list["SubscriptionPayment"]] = relationship(back_populates="account")


class SubscriptionPayment(Base):
    __tablename__ = "subscription_payments"

    id: Mapped[int] = mapped_column(primary_key=True)
    payment_reference: Mapped[str] = mapped_column(String(128), unique=True, nullable=False)
    user_id: Mapped[str] = mapped_column(
        ForeignKey("user_accounts.id", ondelete="CASCADE"), nullable=False
    )
    plan_type: Mapped[str] = mapped_column(Enum(*PAID_TIERS, name="plan_type"), nullable=False)
    applied_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)

    account: Mapped[UserAccount] = relationship(back_populates="payments")


__all__ = ["TIERS", "PAID_TIERS", "UserAccount", "SubscriptionPayment"]
