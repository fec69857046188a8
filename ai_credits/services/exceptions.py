"""Domain-specific exceptions."""

from __future__ import annotations

from datetime import datetime

from ai_credits.domain.models import QuotaDecision

UPGRADE_PATH = {"free": "basic", "basic": "pro"}


class ServiceError(Exception):
    pass


class AccountNotFound(ServiceError):
    def __init__(self, user_id: str) -> None:
        super().__init__(f"Account {user_id!r} not found.")
        self.user_id = user_id


class SubscriptionError(ServiceError):
    pass


class QuotaExceeded(ServiceError):
    """AI usage rejected; carries what the UI needs for upgrade messaging."""

    def __init__(self, decision: QuotaDecision) -> None:
        self.decision = decision
        self.tier = decision.tier
        self.limit = decision.limit
        self.used = decision.used
        self.reset_at: datetime | None = decision.reset_at
        self.required_tier = UPGRADE_PATH.get(decision.tier)
        message = f"AI limit reached: {self.used}/{self.limit} on {self.tier} plan."
        if self.required_tier:
            message += f" Upgrade to {self.required_tier} for more."
        super().__init__(message)


class FeatureNotAvailable(ServiceError):
    def __init__(self, feature: str, tier: str, required_tier: str) -> None:
        super().__init__(f"Feature {feature!r} requires the {required_tier} plan (current: {tier}).")
        self.feature = feature
        self.tier = tier
        self.required_tier = required_tier


class SchedulerTransientFailure(ServiceError):
    def __init__(self, user_id: str, reason: str) -> None:
        super().__init__(f"Daily reset failed for {user_id!r}: {reason}")
        self.user_id = user_id
