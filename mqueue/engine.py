"""
Queue engine.

Composition root wiring the channel registry and message store to one
database handle. Starting the engine checks connectivity, provisions the
schema, loads the channel cache and launches the background loops.
"""

import asyncio
import logging
from datetime import timedelta
from types import TracebackType

from sqlalchemy.exc import SQLAlchemyError

from mqueue.config import Settings, get_settings
from mqueue.constants import QueueMode
from mqueue.db.connection import Database
from mqueue.errors import EngineStartupError
from mqueue.observability.metrics import MetricsCollector
from mqueue.reaper.main import Reaper
from mqueue.registry import ChannelRegistry
from mqueue.store import MessageStore

logger = logging.getLogger(__name__)


class QueueEngine:
    """
    Handle owning a store connection, a channel cache and metrics.

    Usage:
        async with QueueEngine(settings) as engine:
            await engine.channels.create(Channel(name="emails", max_tries=5))
            await engine.messages.add(Message(channel="emails", payload={...}))

    Several engines, in one process or many, cooperate only through the
    shared store.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        metrics: MetricsCollector | None = None,
        background: bool = True,
    ):
        """
        Initialize the engine. Nothing touches the store until ``start``.

        Args:
            settings: Engine settings. Defaults to the environment settings.
            metrics: Metrics collector. Defaults to one with its own registry.
            background: Whether ``start`` launches the channel sync loop and
                the retention reaper.
        """
        self.settings = settings or get_settings()
        self.metrics = metrics or MetricsCollector()
        self.background = background

        self._db: Database | None = None
        self._channels: ChannelRegistry | None = None
        self._messages: MessageStore | None = None
        self._reaper: Reaper | None = None
        self._tasks: list[asyncio.Task] = []

    @property
    def mode(self) -> QueueMode:
        return self.settings.mode

    @property
    def db(self) -> Database:
        if self._db is None:
            raise RuntimeError("Engine not started. Call start() first.")
        return self._db

    @property
    def channels(self) -> ChannelRegistry:
        if self._channels is None:
            raise RuntimeError("Engine not started. Call start() first.")
        return self._channels

    @property
    def messages(self) -> MessageStore:
        if self._messages is None:
            raise RuntimeError("Engine not started. Call start() first.")
        return self._messages

    @property
    def started(self) -> bool:
        return self._db is not None

    async def start(self) -> None:
        """
        Connect, provision the schema and start background loops.

        Raises:
            EngineStartupError: If the store is unreachable or the schema
                cannot be provisioned. The engine is unusable in that case.
        """
        if self.started:
            return

        db = Database(self.settings)
        try:
            await db.ping()
            await db.create_schema()
        except (SQLAlchemyError, OSError, TimeoutError) as e:
            await db.dispose()
            logger.critical("Queue engine failed to start", exc_info=True)
            raise EngineStartupError(f"Cannot initialize queue store: {e}") from e

        self._db = db
        self._channels = ChannelRegistry(
            db,
            mode=self.mode,
            default_visibility=timedelta(seconds=self.settings.default_visibility_seconds),
        )
        self._messages = MessageStore(
            db,
            self._channels,
            mode=self.mode,
            metrics=self.metrics,
            poll_interval=self.settings.watch_poll_interval_seconds,
        )

        await self._channels.sync()

        if self.background:
            self._reaper = Reaper(
                self._messages,
                retention=timedelta(seconds=self.settings.retention_seconds),
                interval_seconds=self.settings.retention_sweep_interval_seconds,
            )
            self._tasks = [
                asyncio.create_task(self._sync_channels_loop()),
                asyncio.create_task(self._reaper.start()),
            ]

        logger.info(
            "Queue engine started",
            extra={"mode": self.mode.value, "dialect": db.dialect, "background": self.background},
        )

    async def stop(self) -> None:
        """Cancel background loops and close the database."""
        if self._reaper is not None:
            await self._reaper.stop()
            self._reaper = None

        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks = []

        if self._db is not None:
            await self._db.dispose()
        self._db = None
        self._channels = None
        self._messages = None
        logger.info("Queue engine stopped")

    async def _sync_channels_loop(self) -> None:
        """
        Periodically reload the channel cache.

        Picks up channels created, changed or deleted by other processes.
        """
        interval = self.settings.channel_sync_interval_seconds
        while True:
            await asyncio.sleep(interval)
            try:
                await self.channels.sync()
            except Exception as e:
                logger.exception(f"Error in channel sync loop: {e}")

    async def __aenter__(self) -> "QueueEngine":
        await self.start()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.stop()
