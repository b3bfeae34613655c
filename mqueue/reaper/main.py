"""
Retention reaper for finished messages.

Completed and dead messages are kept for a retention window (7 days by
default) and then deleted. The reaper runs periodically inside every engine
and can also run as a standalone process or cron job.
"""

import asyncio
import logging
import signal
from datetime import timedelta

from mqueue.config import get_settings
from mqueue.observability.logging import setup_logging
from mqueue.store import MessageStore

logger = logging.getLogger(__name__)


class Reaper:
    """
    Retention reaper that purges finished messages.

    Runs periodically to:
    1. Find messages whose ``deleted`` timestamp is older than the retention
    2. Delete them, whether completed or dead
    3. Record the purge count in metrics
    """

    def __init__(self, store: MessageStore, retention: timedelta, interval_seconds: float):
        """
        Initialize the reaper.

        Args:
            store: Message store to purge.
            retention: How long finished messages are kept.
            interval_seconds: Seconds between reaper runs.
        """
        self.store = store
        self.retention = retention
        self.interval = interval_seconds
        self._stopping = asyncio.Event()

    async def start(self) -> None:
        """Start the reaper loop."""
        logger.info(
            f"Reaper starting with interval {self.interval}s",
            extra={"retention_seconds": self.retention.total_seconds()},
        )
        while not self._stopping.is_set():
            try:
                purged = await self.run_once()

                if purged > 0:
                    logger.info(f"Purged {purged} finished messages")

            except Exception as e:
                logger.exception(f"Error in reaper loop: {e}")

            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=self.interval)
            except TimeoutError:
                pass

        logger.info("Reaper stopped")

    async def stop(self) -> None:
        """Stop the reaper, interrupting the wait between runs."""
        logger.info("Reaper stopping")
        self._stopping.set()

    async def run_once(self) -> int:
        """
        Run the reaper once (for testing or cron-style execution).

        Returns:
            Number of messages purged.
        """
        return await self.store.purge_expired(self.retention)


async def run_async() -> None:
    """Run a standalone reaper process."""
    from mqueue.engine import QueueEngine  # engine imports Reaper

    settings = get_settings()
    setup_logging(settings)

    async with QueueEngine(settings, background=False) as engine:
        reaper = Reaper(
            engine.messages,
            retention=timedelta(seconds=settings.retention_seconds),
            interval_seconds=settings.retention_sweep_interval_seconds,
        )

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(
                sig,
                lambda: asyncio.create_task(reaper.stop())
            )

        await reaper.start()


def run() -> None:
    """Run the reaper."""
    asyncio.run(run_async())


if __name__ == "__main__":
    run()
