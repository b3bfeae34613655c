"""
Worker process for consuming messages.

The worker watches one or more channels, hands each leased message to the
channel's handler, keeps the lease alive while the handler runs, and acks on
success. Failed messages are not acked: their lease expires and they are
redelivered until the channel's max_tries dead-letters them.
"""

import asyncio
import logging
import os
import signal
from uuid import UUID

from prometheus_client import start_http_server

from mqueue.config import get_settings
from mqueue.constants import SPAN_HANDLE_MESSAGE
from mqueue.engine import QueueEngine
from mqueue.observability.logging import bind_context, setup_logging
from mqueue.observability.tracing import get_tracer, instrument_sqlalchemy, setup_tracing
from mqueue.store import MessageWatcher
from mqueue.types.handler import HandlerContext
from mqueue.types.message import QueueMessage
from mqueue.worker.handlers import HandlerRegistry, default_registry

logger = logging.getLogger(__name__)


class Worker:
    """
    Message worker built on watchers.

    Features:
    - One competing watcher per channel
    - Heartbeat pings to extend leases of long-running handlers
    - Graceful shutdown on SIGTERM/SIGINT
    - Retry and dead-lettering left to lease expiry and max_tries
    """

    def __init__(
        self,
        engine: QueueEngine,
        channels: list[str] | None = None,
        handlers: HandlerRegistry | None = None,
        worker_id: str | None = None,
        poll_interval: float | None = None,
        heartbeat_interval: float | None = None,
    ):
        """
        Initialize the worker.

        Args:
            engine: A started queue engine.
            channels: Channels to consume. Defaults to every channel with a
                registered handler.
            handlers: Handler registry. Defaults to the process-wide one.
            worker_id: Unique worker identifier. Defaults to hostname + PID.
            poll_interval: Seconds between polls of each channel.
            heartbeat_interval: Seconds between lease extensions.
        """
        settings = engine.settings

        self.engine = engine
        self.handlers = handlers or default_registry
        self.channels = channels or self.handlers.channels()
        self.worker_id = worker_id or f"{os.uname().nodename}-{os.getpid()}"
        self.poll_interval = (
            settings.watch_poll_interval_seconds if poll_interval is None else poll_interval
        )
        self.heartbeat_interval = (
            settings.worker_heartbeat_interval_seconds
            if heartbeat_interval is None
            else heartbeat_interval
        )

        self._stopped = asyncio.Event()
        self._watchers: list[MessageWatcher] = []
        self._current: dict[UUID, str] = {}

    async def start(self) -> None:
        """Run the worker until ``stop`` is called."""
        if not self.channels:
            raise ValueError("Worker has no channels to consume")

        logger.info(
            "Worker starting",
            extra={"worker_id": self.worker_id, "channels": self.channels}
        )

        self._stopped.clear()
        self._watchers = [
            self.engine.messages.watch(channel, self.poll_interval)
            for channel in self.channels
        ]
        consumers = [asyncio.create_task(self._consume(watcher)) for watcher in self._watchers]
        heartbeat = asyncio.create_task(self._heartbeat_loop())

        await self._stopped.wait()

        # Closing the watchers ends the consumers once their current message is done
        for watcher in self._watchers:
            await watcher.close()
        if self._current:
            logger.info(f"Waiting for {len(self._current)} messages to complete")
        await asyncio.gather(*consumers, return_exceptions=True)

        heartbeat.cancel()
        try:
            await heartbeat
        except asyncio.CancelledError:
            pass

        self._watchers = []
        logger.info("Worker stopped", extra={"worker_id": self.worker_id})

    async def stop(self) -> None:
        """Stop the worker gracefully."""
        logger.info("Worker stopping", extra={"worker_id": self.worker_id})
        self._stopped.set()

    async def _consume(self, watcher: MessageWatcher) -> None:
        async for message in watcher:
            await self.handle(message)

    async def handle(self, message: QueueMessage) -> bool:
        """
        Handle one leased message and ack it on success.

        Args:
            message: The leased message.

        Returns:
            True if the message was handled and acked.
        """
        channel = self.engine.channels.get(message.channel)
        if channel is None:
            logger.warning(
                "Channel vanished while message was leased",
                extra={"message_id": str(message.id), "channel": message.channel}
            )
            return False

        context = HandlerContext(message=message, channel=channel, worker_id=self.worker_id)
        self._current[message.id] = message.ack

        try:
            with get_tracer().start_as_current_span(SPAN_HANDLE_MESSAGE) as span:
                span.set_attribute("message_id", str(message.id))
                span.set_attribute("channel", message.channel)
                span.set_attribute("attempt", context.attempt)

                result = await self.handlers.execute(context)

            if result.success:
                acked = await self.engine.messages.ack(message.ack)
                status = "succeeded" if acked else "lease_lost"
                if not acked:
                    logger.warning(
                        "Failed to ack message - lease may have expired",
                        extra={"message_id": str(message.id)}
                    )
            else:
                acked = False
                status = "failed"
                logger.warning(
                    "Message handler failed",
                    extra={
                        "message_id": str(message.id),
                        "error": result.error,
                        "attempt": context.attempt,
                        "last_attempt": context.is_last_attempt,
                    }
                )

            self.engine.metrics.record_handled(
                channel=message.channel,
                status=status,
                duration_seconds=(result.duration_ms or 0) / 1000,
            )
            return acked
        finally:
            self._current.pop(message.id, None)

    async def _heartbeat_loop(self) -> None:
        """
        Periodically extend leases of messages being handled.

        Keeps long-running handlers from losing their message to another
        worker.
        """
        while True:
            try:
                await asyncio.sleep(self.heartbeat_interval)

                for message_id, ack in list(self._current.items()):
                    if await self.engine.messages.ping(ack):
                        logger.debug(
                            "Extended lease",
                            extra={"message_id": str(message_id)}
                        )

            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.exception(f"Error in heartbeat loop: {e}")


async def run_async() -> None:
    """Run the worker asynchronously."""
    settings = get_settings()
    setup_logging(settings)
    setup_tracing(settings)

    async with QueueEngine(settings) as engine:
        instrument_sqlalchemy(engine.db.engine.sync_engine)
        start_http_server(settings.prometheus_port, registry=engine.metrics.registry)

        worker = Worker(engine, channels=settings.worker_channels or None)
        bind_context(worker_id=worker.worker_id)

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(
                sig,
                lambda: asyncio.create_task(worker.stop())
            )

        await worker.start()


def run() -> None:
    """Run the worker."""
    asyncio.run(run_async())


if __name__ == "__main__":
    run()
