"""
Repositories for channel and message database operations.
Every SQL statement issued by the engine lives here.
"""

import logging
from datetime import datetime
from typing import Any, Sequence
from uuid import UUID

from sqlalchemy import ColumnElement, delete, func, insert, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from mqueue.constants import MessageState
from mqueue.db.models import ChannelRecord, MessageRecord
from mqueue.types.channel import Channel

logger = logging.getLogger(__name__)


def deliverable(now: datetime) -> list[ColumnElement[bool]]:
    """Predicate for messages that may be leased at ``now``."""
    return [
        MessageRecord.visible <= now,
        MessageRecord.dead.is_(False),
        MessageRecord.deleted.is_(None),
    ]


def leased(now: datetime) -> list[ColumnElement[bool]]:
    """Predicate for messages whose lease is still held at ``now``."""
    return [
        MessageRecord.visible > now,
        MessageRecord.dead.is_(False),
        MessageRecord.deleted.is_(None),
    ]


def in_state(state: MessageState | None, now: datetime) -> list[ColumnElement[bool]]:
    """
    Predicate for messages in a derived lifecycle state.

    Args:
        state: The state to match, or None for every message.
        now: The instant the state is evaluated at.
    """
    if state is None:
        return []
    if state == MessageState.PENDING:
        return deliverable(now)
    if state == MessageState.LEASED:
        return leased(now)
    if state == MessageState.COMPLETED:
        return [MessageRecord.deleted.is_not(None), MessageRecord.dead.is_(False)]
    return [MessageRecord.dead.is_(True)]


class ChannelRepository:
    """Repository for channel definitions."""

    def __init__(self, session: AsyncSession):
        self._session = session

    async def insert(self, channel: Channel) -> ChannelRecord:
        """
        Insert a channel.

        Raises:
            IntegrityError: If a channel with the same name exists.
        """
        record = ChannelRecord(
            name=channel.name,
            visibility=channel.visibility,
            max_tries=channel.max_tries,
        )
        self._session.add(record)
        await self._session.flush()
        return record

    async def update(self, channel: Channel) -> int:
        """
        Overwrite the policy of the channel named ``channel.name``.

        Returns:
            Number of rows changed (0 if no such channel).
        """
        stmt = (
            update(ChannelRecord)
            .where(ChannelRecord.name == channel.name)
            .values(visibility=channel.visibility, max_tries=channel.max_tries)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return result.rowcount

    async def delete(self, name: str) -> int:
        stmt = delete(ChannelRecord).where(ChannelRecord.name == name)
        result = await self._session.execute(stmt)
        return result.rowcount

    async def delete_all(self) -> int:
        result = await self._session.execute(delete(ChannelRecord))
        return result.rowcount

    async def list_all(self) -> Sequence[ChannelRecord]:
        result = await self._session.execute(select(ChannelRecord).order_by(ChannelRecord.name))
        return result.scalars().all()


class MessageRepository:
    """
    Repository for message rows.

    Implements atomic operations for:
    - Lease acquisition with FOR UPDATE SKIP LOCKED
    - Conditional ack and lease extension keyed on the ack token
    - Dead-lettering, retention purges and state counts
    """

    def __init__(self, session: AsyncSession):
        """
        Initialize the repository with a database session.

        Args:
            session: The async database session.
        """
        self._session = session

    async def insert_many(self, rows: list[dict[str, Any]]) -> None:
        """Insert message rows in the current transaction."""
        await self._session.execute(insert(MessageRecord), rows)

    async def acquire(
        self,
        channel: str,
        now: datetime,
        visible_until: datetime,
        ack: str,
    ) -> MessageRecord | None:
        """
        Lease the next deliverable message of a channel.

        A single UPDATE picks one deliverable row (skipping rows locked by
        competing workers), increments ``tries``, rotates the ack token and
        hides the row until ``visible_until``. The deliverable predicate is
        re-checked on the updated row, so two callers can never lease the
        same message for the same cycle.

        Args:
            channel: Channel name.
            now: Current time.
            visible_until: New visibility deadline.
            ack: Fresh ack token for this delivery.

        Returns:
            The updated row, or None if nothing is deliverable.
        """
        candidate = (
            select(MessageRecord.id)
            .where(MessageRecord.channel == channel, *deliverable(now))
            .order_by(MessageRecord.visible)
            .limit(1)
            .with_for_update(skip_locked=True)
            .scalar_subquery()
        )
        stmt = (
            update(MessageRecord)
            .where(MessageRecord.id == candidate, *deliverable(now))
            .values(
                tries=MessageRecord.tries + 1,
                ack=ack,
                visible=visible_until,
            )
            .returning(MessageRecord)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def mark_dead(self, message_id: UUID, now: datetime) -> int:
        """Move a message to the dead state."""
        stmt = (
            update(MessageRecord)
            .where(MessageRecord.id == message_id, MessageRecord.dead.is_(False))
            .values(dead=True, deleted=now)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return result.rowcount

    async def complete(self, ack: str, now: datetime) -> str | None:
        """
        Complete the message holding a live lease under ``ack``.

        Returns:
            The message's channel, or None if the lease is not live.
        """
        stmt = (
            update(MessageRecord)
            .where(MessageRecord.ack == ack, *leased(now))
            .values(deleted=now)
            .returning(MessageRecord.channel)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_leased_channel(self, ack: str, now: datetime) -> str | None:
        """Get the channel of the message holding a live lease under ``ack``."""
        stmt = select(MessageRecord.channel).where(MessageRecord.ack == ack, *leased(now))
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def extend(self, ack: str, now: datetime, visible_until: datetime) -> str | None:
        """
        Push the visibility deadline of a live lease to ``visible_until``.

        The update only applies if it moves the deadline later.

        Returns:
            The message's channel, or None if the lease is not live.
        """
        stmt = (
            update(MessageRecord)
            .where(
                MessageRecord.ack == ack,
                MessageRecord.visible < visible_until,
                *leased(now),
            )
            .values(visible=visible_until)
            .returning(MessageRecord.channel)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def release(self, ack: str, now: datetime) -> str | None:
        """
        Give back a live lease that was never handed to a consumer.

        The message becomes deliverable at ``now`` and the try counted by
        the lease is returned.

        Returns:
            The message's channel, or None if the lease is not live.
        """
        stmt = (
            update(MessageRecord)
            .where(MessageRecord.ack == ack, *leased(now))
            .values(visible=now, tries=MessageRecord.tries - 1)
            .returning(MessageRecord.channel)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def count(
        self,
        state: MessageState | None,
        now: datetime,
        channel: str | None = None,
    ) -> int:
        """
        Count messages in a lifecycle state.

        Args:
            state: State to count, or None for all messages.
            now: The instant the state is evaluated at.
            channel: Optional channel filter.

        Returns:
            Number of matching messages.
        """
        filters = in_state(state, now)
        if channel is not None:
            filters.append(MessageRecord.channel == channel)

        stmt = select(func.count()).select_from(MessageRecord)
        if filters:
            stmt = stmt.where(*filters)
        result = await self._session.execute(stmt)
        return result.scalar() or 0

    async def delete_many(self, channel: str | None = None) -> int:
        stmt = delete(MessageRecord)
        if channel is not None:
            stmt = stmt.where(MessageRecord.channel == channel)
        result = await self._session.execute(stmt)
        return result.rowcount

    async def purge_finished(self, before: datetime) -> int:
        """
        Delete completed and dead messages finished before ``before``.

        Returns:
            Number of purged messages.
        """
        stmt = delete(MessageRecord).where(
            MessageRecord.deleted.is_not(None),
            MessageRecord.deleted < before,
        )
        result = await self._session.execute(stmt)
        count = result.rowcount

        if count > 0:
            logger.info(f"Purged {count} finished messages")

        return count
