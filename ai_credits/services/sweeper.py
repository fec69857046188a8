"""Recurring background sweep that downgrades expired subscriptions."""

from __future__ import annotations

import asyncio
from datetime import datetime

from ai_credits.config import CreditsSettings, get_settings
from ai_credits.logging import logger
from ai_credits.services.scheduler import ResetScheduler, SessionSource
from ai_credits.services.subscriptions import SubscriptionLifecycle


class ExpirySweeper:
    def __init__(
        self,
        database: SessionSource,
        settings: CreditsSettings | None = None,
        *,
        scheduler: ResetScheduler | None = None,
        interval_seconds: float | None = None,
    ) -> None:
        self.database = database
        self.settings = settings or get_settings()
        self.scheduler = scheduler
        self.interval_seconds = interval_seconds or self.settings.scheduler.sweep_interval_seconds
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(self._loop(), name="credits-expiry-sweep")
        logger.info("expiry_sweeper_started", interval_seconds=self.interval_seconds)

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        logger.info("expiry_sweeper_stopped")

    async def run_once(self, *, now: datetime | None = None) -> int:
        async with self.database.session() as session:
            lifecycle = SubscriptionLifecycle(session, self.settings, scheduler=self.scheduler)
            downgraded = await lifecycle.sweep_expired(now=now)
            await session.commit()
        return downgraded

    async def _loop(self) -> None:
        while True:
            try:
                await self.run_once()
            except Exception:
                logger.exception("expiry_sweep_failed")
            await asyncio.sleep(self.interval_seconds)


__all__ = ["ExpirySweeper"]
