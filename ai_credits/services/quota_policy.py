"""Pure quota rules mapping an account snapshot to a usage decision.

Nothing here touches the database: counters that are due for a reset are
reported as stored (the daily pool) or treated as empty (a monthly pool from
an earlier calendar month). Callers reset through the account store.
"""

from __future__ import annotations

from datetime import datetime, timedelta

from ai_credits.config import QuotaSettings
from ai_credits.db.models.core import UserAccount
from ai_credits.domain.models import UNLIMITED, QuotaDecision, Tier
from ai_credits.utils.datetime import ensure_utc, next_month_start, same_month

DEFAULT_RESET_INTERVAL = timedelta(hours=24)


def is_subscription_active(account: UserAccount, now: datetime) -> bool:
    end = ensure_utc(account.subscription_end_date)
    if end is None:
        return False
    return now < end


def is_expired(account: UserAccount, now: datetime) -> bool:
    """Paid tier whose subscription window has elapsed."""

    end = ensure_utc(account.subscription_end_date)
    return account.tier != "free" and end is not None and now >= end


def effective_tier(account: UserAccount, now: datetime) -> Tier:
    if account.tier in ("basic", "pro") and is_subscription_active(account, now):
        return account.tier  # type: ignore[return-value]
    return "free"


def daily_reset_at(account: UserAccount, interval: timedelta = DEFAULT_RESET_INTERVAL) -> datetime | None:
    reset_at = ensure_utc(account.daily_usage_reset_at)
    return reset_at + interval if reset_at else None


def daily_reset_due(
    account: UserAccount, now: datetime, interval: timedelta = DEFAULT_RESET_INTERVAL
) -> bool:
    next_reset = daily_reset_at(account, interval)
    return next_reset is None or now >= next_reset


def monthly_reset_due(account: UserAccount, now: datetime) -> bool:
    reset_at = ensure_utc(account.monthly_usage_reset_at)
    return reset_at is None or not same_month(reset_at, now)


def evaluate(
    account: UserAccount,
    now: datetime,
    limits: QuotaSettings | None = None,
    *,
    interval: timedelta = DEFAULT_RESET_INTERVAL,
) -> QuotaDecision:
    limits = limits or QuotaSettings()
    tier = effective_tier(account, now)
    daily_used = account.daily_usage_count or 0

    if tier == "pro":
        return QuotaDecision(
            allowed=True,
            tier="pro",
            used=daily_used,
            limit=UNLIMITED,
            remaining=UNLIMITED,
            reset_at=None,
            pool="unlimited",
            message="Pro plan - unlimited AI usage",
        )

    if tier == "basic":
        return _evaluate_basic(account, now, limits, interval)

    limit = limits.free_daily_limit
    allowed = daily_used < limit
    return QuotaDecision(
        allowed=allowed,
        tier="free",
        used=daily_used,
        limit=limit,
        remaining=max(0, limit - daily_used),
        reset_at=daily_reset_at(account, interval),
        pool="daily",
        message="Free plan" if allowed else "Daily limit reached - upgrade for more",
    )


def _evaluate_basic(
    account: UserAccount, now: datetime, limits: QuotaSettings, interval: timedelta
) -> QuotaDecision:
    daily_used = account.daily_usage_count or 0
    monthly_used = 0 if monthly_reset_due(account, now) else account.monthly_usage_count or 0
    daily_limit = limits.basic_daily_limit
    monthly_limit = limits.basic_monthly_limit

    if daily_used < daily_limit:
        return QuotaDecision(
            allowed=True,
            tier="basic",
            used=daily_used,
            limit=daily_limit,
            remaining=daily_limit - daily_used,
            reset_at=daily_reset_at(account, interval),
            pool="daily",
            message="Using daily credits",
        )

    month_end = next_month_start(now)
    if monthly_used < monthly_limit:
        return QuotaDecision(
            allowed=True,
            tier="basic",
            used=monthly_used,
            limit=monthly_limit,
            remaining=monthly_limit - monthly_used,
            reset_at=month_end,
            pool="monthly",
            message="Using monthly credits",
        )

    # Whichever pool refills first.
    candidates = [month_end]
    next_daily = daily_reset_at(account, interval)
    if next_daily is not None:
        candidates.append(next_daily)
    return QuotaDecision(
        allowed=False,
        tier="basic",
        used=monthly_used,
        limit=monthly_limit,
        remaining=0,
        reset_at=min(candidates),
        pool="monthly",
        message="Monthly limit reached - upgrade to Pro for unlimited",
    )


__all__ = [
    "DEFAULT_RESET_INTERVAL",
    "daily_reset_at",
    "daily_reset_due",
    "effective_tier",
    "evaluate",
    "is_expired",
    "is_subscription_active",
    "monthly_reset_due",
]
