"""Per-user daily credit reset timers for free-tier accounts."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta
from typing import Protocol

from ai_credits.config import CreditsSettings, get_settings
from ai_credits.logging import logger
from ai_credits.services.accounts import UserAccountStore
from ai_credits.services.exceptions import AccountNotFound, SchedulerTransientFailure
from ai_credits.utils.datetime import ensure_utc, utc_now


class SessionSource(Protocol):
    def session(self): ...


class ResetScheduler:
    """Registry of armed reset timers, one asyncio task per free user.

    A timer fires ``reset_interval`` after it was armed, zeroes the daily
    counter if the account is still on the free tier and re-arms itself.
    Timer state is never persisted: ``start()`` rebuilds it from each
    account's ``daily_usage_reset_at``.
    """

    def __init__(
        self,
        database: SessionSource,
        settings: CreditsSettings | None = None,
        *,
        interval: timedelta | None = None,
    ) -> None:
        self.database = database
        self.settings = settings or get_settings()
        self.interval = interval or self.settings.scheduler.reset_interval
        self._timers: dict[str, asyncio.Task[None]] = {}
        self._firing: set[asyncio.Task[None]] = set()
        self._running = False
        self._stopped = False

    @property
    def running(self) -> bool:
        return self._running

    async def start(self, now: datetime | None = None) -> int:
        if self._running:
            return 0
        self._running = True
        self._stopped = False
        logger.info("reset_scheduler_starting", interval_seconds=self.interval.total_seconds())
        if not self.settings.scheduler.recover_on_start:
            return 0
        return await self.recover_on_startup(now)

    async def stop(self) -> None:
        self._stopped = True
        tasks = [*self._timers.values(), *self._firing]
        self._timers.clear()
        self._firing.clear()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._running = False
        logger.info("reset_scheduler_stopped", cancelled=len(tasks))

    def arm(self, user_id: str, delay: timedelta | None = None) -> None:
        """(Re)schedule the reset for ``user_id``; any pending timer is replaced.

        Does nothing once ``stop()`` has run.
        """

        if self._stopped:
            return
        self.cancel(user_id)
        delay = self.interval if delay is None else min(max(delay, timedelta(0)), self.interval)
        seconds = delay.total_seconds()
        task = asyncio.get_running_loop().create_task(
            self._fire_after(user_id, seconds), name=f"credits-reset:{user_id}"
        )
        self._timers[user_id] = task
        logger.info("reset_timer_armed", user_id=user_id, delay_seconds=seconds)

    def cancel(self, user_id: str) -> bool:
        task = self._timers.pop(user_id, None)
        if task is None:
            return False
        if task is not asyncio.current_task():
            task.cancel()
        logger.info("reset_timer_cancelled", user_id=user_id)
        return True

    def is_armed(self, user_id: str) -> bool:
        return user_id in self._timers

    def active_timers(self) -> list[str]:
        return sorted(self._timers)

    async def recover_on_startup(self, now: datetime | None = None) -> int:
        now = now or utc_now()
        async with self.database.session() as session:
            accounts = await UserAccountStore(session).list_recoverable()
            pending = [(account.id, ensure_utc(account.daily_usage_reset_at)) for account in accounts]

        armed = 0
        for user_id, reset_at in pending:
            remaining = (reset_at or now) + self.interval - now
            if remaining <= timedelta(0):
                try:
                    still_free = await self._reset(user_id, now=now)
                except SchedulerTransientFailure as exc:
                    logger.warning("reset_recovery_failed", user_id=user_id, error=str(exc))
                    continue
                if not still_free:
                    continue
                self.arm(user_id)
            else:
                self.arm(user_id, remaining)
            armed += 1

        logger.info("reset_timers_recovered", count=armed, candidates=len(pending))
        return armed

    async def force_reset(self, user_id: str) -> bool:
        """Reset now and restart the cycle; returns False for non-free accounts."""

        still_free = await self._reset(user_id)
        if still_free:
            self.arm(user_id)
        else:
            self.cancel(user_id)
        return still_free

    # Internal helpers -------------------------------------------------

    async def _fire_after(self, user_id: str, seconds: float) -> None:
        await asyncio.sleep(seconds)
        task = asyncio.current_task()
        if self._timers.get(user_id) is task:
            del self._timers[user_id]
        # Tracked until the reset settles so stop() can still cancel it.
        self._firing.add(task)

        try:
            still_free = await self._reset(user_id)
        except SchedulerTransientFailure as exc:
            logger.warning("reset_timer_failed", user_id=user_id, error=str(exc))
            return
        finally:
            self._firing.discard(task)

        if self._stopped:
            return
        if still_free:
            self.arm(user_id)
        else:
            logger.info("reset_timer_released", user_id=user_id)

    async def _reset(self, user_id: str, now: datetime | None = None) -> bool:
        try:
            async with self.database.session() as session:
                store = UserAccountStore(session)
                try:
                    account = await store.get(user_id, for_update=True)
                except AccountNotFound:
                    logger.warning("reset_timer_account_missing", user_id=user_id)
                    return False
                if account.tier != "free":
                    return False
                await store.reset_daily(user_id, now=now)
                await session.commit()
        except Exception as exc:
            raise SchedulerTransientFailure(user_id, str(exc)) from exc

        logger.info("daily_credits_reset", user_id=user_id)
        return True


__all__ = ["ResetScheduler"]
