"""Pydantic models shared across logic/application layers."""

from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field

Tier = Literal["free", "basic", "pro"]
PlanType = Literal["basic", "pro"]
UsagePool = Literal["daily", "monthly", "unlimited"]

UNLIMITED = -1


class QuotaDecision(BaseModel):
    allowed: bool
    tier: Tier
    used: int
    limit: int
    remaining: int
    reset_at: datetime | None = None
    pool: UsagePool = "daily"
    message: str = ""

    @property
    def unlimited(self) -> bool:
        return self.limit == UNLIMITED


class SubscriptionStatus(BaseModel):
    tier: Tier
    is_active: bool
    subscription_end_date: datetime | None = None
    days_remaining: int = 0
    daily_usage: int = 0
    monthly_usage: int = 0
    frozen_credits: int = 0


class PaymentConfirmed(BaseModel):
    """Already-verified payment event delivered by the payment collaborator."""

    user_id: str = Field(min_length=1)
    plan_type: PlanType
    payment_reference: str = Field(min_length=1)


__all__ = [
    "Tier",
    "PlanType",
    "UsagePool",
    "UNLIMITED",
    "QuotaDecision",
    "SubscriptionStatus",
    "PaymentConfirmed",
]
