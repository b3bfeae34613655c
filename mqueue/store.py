"""
Message store.

Owns the message lifecycle: enqueue, lease acquisition, ack, lease
extension, dead-lettering and statistics. Competing consumers are kept apart
by the store's atomic conditional updates; there is no in-process locking.
"""

import asyncio
import logging
from collections import Counter
from collections.abc import Callable
from datetime import timedelta
from types import TracebackType
from typing import Any
from uuid import uuid4

from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError

from mqueue.constants import (
    SPAN_ACK_MESSAGE,
    SPAN_ACQUIRE_LEASE,
    SPAN_ENQUEUE,
    MessageState,
    QueueMode,
)
from mqueue.db.connection import Database
from mqueue.db.models import MessageRecord
from mqueue.db.repository import MessageRepository
from mqueue.errors import StatsError
from mqueue.observability.metrics import MetricsCollector
from mqueue.observability.tracing import get_tracer
from mqueue.registry import ChannelRegistry
from mqueue.types.message import Message, QueueMessage, QueueStats
from mqueue.utils import new_ack_token, utcnow

logger = logging.getLogger(__name__)

# Hook called on each message of a batch before it is validated and stored
BeforeInsert = Callable[[Message], None]


def _to_document(payload: Any) -> Any:
    if isinstance(payload, BaseModel):
        return payload.model_dump(mode="json")
    return payload


def _to_queue_message(record: MessageRecord) -> QueueMessage:
    return QueueMessage(
        id=record.id,
        channel=record.channel,
        payload=record.payload,
        ack=record.ack,
        tries=record.tries,
        visible=record.visible,
        dead=record.dead,
        deleted=record.deleted,
    )


class MessageStore:
    """
    Store for queue messages.

    Failures of ``add``, ``get``, ``ack`` and ``ping`` are logged and
    reported as False/None: callers treat them like an empty queue and retry.
    Statistics raise ``StatsError`` instead, so a failed query is never
    mistaken for a zero count.
    """

    def __init__(
        self,
        db: Database,
        channels: ChannelRegistry,
        mode: QueueMode,
        metrics: MetricsCollector,
        poll_interval: float = 1.0,
    ):
        """
        Initialize the store.

        Args:
            db: Database handle shared with the registry.
            channels: Registry consulted for channel policies.
            mode: Operating mode gating ``clear``.
            metrics: Metrics collector of the owning engine.
            poll_interval: Default polling interval for ``watch``.
        """
        self._db = db
        self._channels = channels
        self._mode = mode
        self._metrics = metrics
        self._poll_interval = poll_interval

    async def add(self, *messages: Message, before_insert: BeforeInsert | None = None) -> bool:
        """
        Enqueue a batch of messages.

        Every message must name a registered channel and carry a payload;
        if any message fails validation nothing is written. The batch is
        inserted in one transaction.

        Args:
            *messages: Messages to enqueue.
            before_insert: Optional hook run on every message before
                validation, e.g. to stamp payload defaults.

        Returns:
            True if the whole batch was stored.
        """
        if not messages:
            return False

        if before_insert is not None:
            try:
                for message in messages:
                    before_insert(message)
            except Exception:
                logger.exception("Rejected message batch: before_insert hook failed")
                return False

        for message in messages:
            if not message.channel or message.payload is None:
                logger.warning("Rejected message batch: empty channel or payload")
                return False
            if self._channels.get(message.channel) is None:
                logger.warning(
                    "Rejected message batch: unknown channel",
                    extra={"channel": message.channel},
                )
                return False

        now = utcnow()
        rows = [
            {
                "id": uuid4(),
                "channel": message.channel,
                "payload": _to_document(message.payload),
                "ack": new_ack_token(),
                "tries": 0,
                "visible": now + message.delay,
                "dead": False,
                "deleted": None,
            }
            for message in messages
        ]

        with get_tracer().start_as_current_span(SPAN_ENQUEUE) as span:
            span.set_attribute("message_count", len(rows))
            try:
                async with self._db.session() as session:
                    await MessageRepository(session).insert_many(rows)
            except SQLAlchemyError:
                logger.exception("Failed to enqueue messages", extra={"count": len(rows)})
                return False

        for channel, count in Counter(message.channel for message in messages).items():
            self._metrics.record_enqueued(channel, count)
        logger.debug("Enqueued messages", extra={"count": len(rows)})
        return True

    async def get(self, channel: str) -> QueueMessage | None:
        """
        Lease the next deliverable message of a channel.

        The lease hides the message for the channel's visibility window,
        increments ``tries`` and issues a fresh ack token. A message whose
        ``tries`` would exceed the channel's ``max_tries`` is moved to the
        dead state instead and None is returned.

        Args:
            channel: Channel name.

        Returns:
            The leased message, or None if the channel is unknown, nothing
            is deliverable, or the store failed.
        """
        policy = self._channels.get(channel)
        if policy is None:
            return None

        now = utcnow()
        with get_tracer().start_as_current_span(SPAN_ACQUIRE_LEASE) as span:
            span.set_attribute("channel", channel)
            try:
                async with self._db.session() as session:
                    repo = MessageRepository(session)
                    record = await repo.acquire(
                        channel=channel,
                        now=now,
                        visible_until=now + policy.visibility,
                        ack=new_ack_token(),
                    )
                    if record is None:
                        return None

                    if policy.limits_tries and record.tries > policy.max_tries:
                        await repo.mark_dead(record.id, now)
                        dead_id = record.id
                    else:
                        dead_id = None
                        message = _to_queue_message(record)
            except SQLAlchemyError:
                logger.exception("Failed to acquire lease", extra={"channel": channel})
                return None

            if dead_id is not None:
                self._metrics.record_dead(channel)
                logger.warning(
                    "Message moved to dead state",
                    extra={"channel": channel, "message_id": str(dead_id), "max_tries": policy.max_tries},
                )
                return None

            span.set_attribute("tries", message.tries)

        self._metrics.record_lease_acquired(channel)
        return message

    def watch(self, channel: str, interval: float | None = None) -> "MessageWatcher":
        """
        Stream leased messages of a channel.

        Starts a background task that, while a consumer is waiting on the
        returned watcher, calls ``get`` every ``interval`` seconds until a
        message is leased. Several watchers on one channel compete for
        messages.

        Args:
            channel: Channel name.
            interval: Seconds between polls. Defaults to the store's poll
                interval.

        Returns:
            A started watcher; close it to stop polling.
        """
        if interval is None:
            interval = self._poll_interval
        watcher = MessageWatcher(self, channel, interval)
        watcher.start()
        return watcher

    async def ack(self, token: str) -> bool:
        """
        Complete the message leased under ``token``.

        Fails if the lease has expired, the token was rotated by a newer
        lease, or the message is already completed or dead.

        Returns:
            True if the message was completed.
        """
        if not token:
            return False

        now = utcnow()
        with get_tracer().start_as_current_span(SPAN_ACK_MESSAGE):
            try:
                async with self._db.session() as session:
                    channel = await MessageRepository(session).complete(token, now)
            except SQLAlchemyError:
                logger.exception("Failed to ack message")
                return False

        if channel is None:
            logger.debug("Ack rejected: lease not held", extra={"ack": token})
            return False

        self._metrics.record_acked(channel)
        return True

    async def ping(self, token: str) -> bool:
        """
        Extend the lease held under ``token`` by the channel's visibility.

        Same liveness rules as ``ack``. The new deadline must be later than
        the current one, so a successful ping always pushes it forward.

        Returns:
            True if the lease was extended.
        """
        if not token:
            return False

        try:
            async with self._db.session() as session:
                repo = MessageRepository(session)
                now = utcnow()
                channel_name = await repo.get_leased_channel(token, now)
                if channel_name is None:
                    return False

                policy = self._channels.get(channel_name)
                if policy is None:
                    return False

                extended = await repo.extend(token, now, now + policy.visibility)
        except SQLAlchemyError:
            logger.exception("Failed to extend lease")
            return False

        if extended is None:
            return False

        self._metrics.record_lease_extended(extended)
        return True

    async def release(self, token: str) -> bool:
        """
        Return an undelivered lease to the queue.

        The message becomes deliverable immediately and the try taken by
        the lease is not counted. Only for leases no consumer has seen.

        Returns:
            True if the lease was live and has been released.
        """
        if not token:
            return False

        try:
            async with self._db.session() as session:
                channel = await MessageRepository(session).release(token, utcnow())
        except SQLAlchemyError:
            logger.exception("Failed to release lease")
            return False

        if channel is None:
            return False

        logger.debug("Released undelivered lease", extra={"channel": channel})
        return True

    async def _count(self, state: MessageState | None, channel: str | None) -> int:
        try:
            async with self._db.session() as session:
                return await MessageRepository(session).count(state, utcnow(), channel)
        except SQLAlchemyError as e:
            raise StatsError(f"Failed to count {state or 'all'} messages") from e

    async def total(self, channel: str | None = None) -> int:
        """Count all stored messages."""
        return await self._count(None, channel)

    async def size(self, channel: str | None = None) -> int:
        """Count messages deliverable now."""
        return await self._count(MessageState.PENDING, channel)

    async def in_flight(self, channel: str | None = None) -> int:
        """Count leased messages whose lease has not expired."""
        return await self._count(MessageState.LEASED, channel)

    async def done(self, channel: str | None = None) -> int:
        """Count acknowledged messages."""
        return await self._count(MessageState.COMPLETED, channel)

    async def dead(self, channel: str | None = None) -> int:
        """Count dead-lettered messages."""
        return await self._count(MessageState.DEAD, channel)

    async def stats(self, channel: str | None = None) -> QueueStats:
        """
        Get all counts at one instant.

        Raises:
            StatsError: If any count query fails.
        """
        now = utcnow()
        try:
            async with self._db.session() as session:
                repo = MessageRepository(session)
                counts = {
                    state: await repo.count(state, now, channel)
                    for state in (None, *MessageState)
                }
        except SQLAlchemyError as e:
            raise StatsError("Failed to compute queue stats") from e

        stats = QueueStats(
            channel=channel,
            total=counts[None],
            size=counts[MessageState.PENDING],
            in_flight=counts[MessageState.LEASED],
            done=counts[MessageState.COMPLETED],
            dead=counts[MessageState.DEAD],
        )
        self._metrics.update_queue_depth(stats)
        return stats

    async def clear(self, channel: str | None = None) -> bool:
        """
        Delete messages, optionally of one channel. Debug mode only.

        Returns:
            True if the messages were deleted; False in release mode or on
            a store error.
        """
        if self._mode != QueueMode.DEBUG:
            logger.warning('The "clear" operation on messages is only allowed in debug mode')
            return False

        try:
            async with self._db.session() as session:
                count = await MessageRepository(session).delete_many(channel)
        except SQLAlchemyError:
            logger.exception("Failed to clear messages", extra={"channel": channel})
            return False

        logger.info(f"Cleared {count} messages", extra={"channel": channel})
        return True

    async def purge_expired(self, retention: timedelta) -> int:
        """
        Delete completed and dead messages older than ``retention``.

        Returns:
            Number of purged messages.
        """
        async with self._db.session() as session:
            count = await MessageRepository(session).purge_finished(utcnow() - retention)

        if count > 0:
            self._metrics.record_purged(count)
        return count


class MessageWatcher:
    """
    Async iterator over messages leased by a background polling task.

    Usage:
        async with store.watch("emails", interval=0.5) as watcher:
            async for message in watcher:
                ...
                await store.ack(message.ack)

    The polling task only leases while a consumer is waiting in
    ``__anext__``, so no lease runs ahead of its consumer. A message leased
    for a consumer that has since gone is released back to the queue on close.
    """

    def __init__(self, store: MessageStore, channel: str, interval: float):
        self.channel = channel
        self.interval = interval
        self._store = store
        self._handoff: asyncio.Queue[QueueMessage] = asyncio.Queue()
        # Consumers waiting in __anext__ that no leased message is queued for yet
        self._wanted = 0
        self._demand = asyncio.Event()
        self._closed = asyncio.Event()
        self._task: asyncio.Task | None = None

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def start(self) -> None:
        """Start the polling task."""
        if self._task is None and not self._closed.is_set():
            self._task = asyncio.create_task(self._poll())
            logger.debug("Watcher started", extra={"channel": self.channel})

    async def _poll(self) -> None:
        while True:
            await self._demand.wait()
            if self._closed.is_set():
                return

            try:
                message = await self._store.get(self.channel)
            except Exception as e:
                logger.exception(f"Error in watcher loop: {e}", extra={"channel": self.channel})
                message = None

            if message is not None:
                self._handoff.put_nowait(message)
                self._drop_want()
                continue

            try:
                await asyncio.wait_for(self._closed.wait(), timeout=self.interval)
            except TimeoutError:
                pass

    async def close(self) -> None:
        """
        Stop polling. Pending ``__anext__`` calls end the iteration.

        Waits for an in-progress poll to finish, then releases any leased
        message no consumer has taken.
        """
        self._closed.set()
        self._demand.set()
        if self._task is not None:
            await self._task
            self._task = None

        while not self._handoff.empty():
            message = self._handoff.get_nowait()
            await self._store.release(message.ack)
        logger.debug("Watcher closed", extra={"channel": self.channel})

    def __aiter__(self) -> "MessageWatcher":
        return self

    async def __anext__(self) -> QueueMessage:
        if self._closed.is_set():
            raise StopAsyncIteration
        if not self._handoff.empty():
            return self._handoff.get_nowait()

        self._wanted += 1
        self._demand.set()
        getter = asyncio.ensure_future(self._handoff.get())
        closer = asyncio.ensure_future(self._closed.wait())
        try:
            await asyncio.wait({getter, closer}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            closer.cancel()
            if getter.done():
                # Keep the message for the next consumer or for release on close
                self._handoff.put_nowait(getter.result())
            else:
                getter.cancel()
                self._drop_want()
            raise

        closer.cancel()
        if getter.done():
            return getter.result()
        getter.cancel()
        self._drop_want()
        raise StopAsyncIteration

    def _drop_want(self) -> None:
        self._wanted = max(0, self._wanted - 1)
        if self._wanted == 0:
            self._demand.clear()

    async def __aenter__(self) -> "MessageWatcher":
        self.start()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.close()
