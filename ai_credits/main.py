"""Application entrypoint."""

from __future__ import annotations

import asyncio
import contextlib
import signal

from ai_credits.config import get_settings
from ai_credits.db.session import Database
from ai_credits.logging import configure_logging, logger
from ai_credits.services.scheduler import ResetScheduler
from ai_credits.services.sweeper import ExpirySweeper


async def main(stop_event: asyncio.Event | None = None) -> None:
    settings = get_settings()
    configure_logging(settings.log_level)

    database = Database(settings=settings)
    await database.create_all()

    scheduler = ResetScheduler(database, settings)
    sweeper = ExpirySweeper(database, settings, scheduler=scheduler)

    if stop_event is None:
        stop_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            with contextlib.suppress(NotImplementedError, RuntimeError):
                loop.add_signal_handler(sig, stop_event.set)

    recovered = await scheduler.start()
    sweeper.start()
    logger.info("credits_engine_started", environment=settings.environment, recovered_timers=recovered)

    try:
        await stop_event.wait()
    finally:
        logger.info("credits_engine_stopping")
        await sweeper.stop()
        await scheduler.stop()
        await database.dispose()


if __name__ == "__main__":
    asyncio.run(main())
