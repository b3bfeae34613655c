"""
Channel registry.

Owns channel definitions in the store and an in-memory snapshot of them.
Message operations read the snapshot on every call; the store is only read
by ``sync``.
"""

import logging
from datetime import timedelta

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from mqueue.constants import QueueMode
from mqueue.db.connection import Database
from mqueue.db.repository import ChannelRepository
from mqueue.types.channel import Channel

logger = logging.getLogger(__name__)


class ChannelRegistry:
    """
    Registry of channel definitions with a read cache.

    Mutations write to the store and then reload the whole cache, so a
    successful mutation is visible to ``get`` as soon as it returns. Changes
    made by other processes show up after the next ``sync``; the engine runs
    one on a fixed interval.
    """

    def __init__(self, db: Database, mode: QueueMode, default_visibility: timedelta):
        """
        Initialize the registry.

        Args:
            db: Database handle shared with the message store.
            mode: Operating mode gating ``clear``.
            default_visibility: Visibility applied to channels created
                without one.
        """
        self._db = db
        self._mode = mode
        self._default_visibility = default_visibility
        self._cache: dict[str, Channel] = {}

    def _prepare(self, channel: Channel | None) -> Channel | None:
        if channel is None or not channel.name:
            return None
        if channel.visibility <= timedelta(0):
            channel = channel.model_copy(update={"visibility": self._default_visibility})
        return channel

    async def create(self, channel: Channel) -> bool:
        """
        Create a channel.

        Args:
            channel: Channel to create. A zero visibility is replaced by the
                default.

        Returns:
            True if the channel was created, False if the name is empty,
            already taken, or the store failed.
        """
        channel = self._prepare(channel)
        if channel is None:
            return False

        try:
            async with self._db.session() as session:
                await ChannelRepository(session).insert(channel)
        except IntegrityError:
            logger.warning("Channel already exists", extra={"channel": channel.name})
            return False
        except SQLAlchemyError:
            logger.exception("Failed to create channel", extra={"channel": channel.name})
            return False

        logger.info(
            "Created channel",
            extra={
                "channel": channel.name,
                "visibility": channel.visibility.total_seconds(),
                "max_tries": channel.max_tries,
            },
        )
        await self.sync()
        return True

    async def update(self, channel: Channel) -> bool:
        """
        Overwrite a channel's policy.

        Updating a name that does not exist is a successful no-op: nothing
        is created and True is returned.

        Returns:
            True unless validation or the store failed.
        """
        channel = self._prepare(channel)
        if channel is None:
            return False

        try:
            async with self._db.session() as session:
                matched = await ChannelRepository(session).update(channel)
        except SQLAlchemyError:
            logger.exception("Failed to update channel", extra={"channel": channel.name})
            return False

        logger.info("Updated channel", extra={"channel": channel.name, "matched": matched})
        await self.sync()
        return True

    async def delete(self, name: str) -> bool:
        """
        Delete a channel.

        Messages already enqueued under the name stay in the store; they
        cannot be leased while the channel does not resolve.
        """
        try:
            async with self._db.session() as session:
                await ChannelRepository(session).delete(name)
        except SQLAlchemyError:
            logger.exception("Failed to delete channel", extra={"channel": name})
            return False

        logger.info("Deleted channel", extra={"channel": name})
        await self.sync()
        return True

    def get(self, name: str) -> Channel | None:
        """Look a channel up in the cache."""
        return self._cache.get(name)

    def all(self) -> list[Channel] | None:
        """
        Get every cached channel.

        Returns:
            The cached channels, or None when the cache is empty. An empty
            store and a cache that was never loaded look the same.
        """
        if not self._cache:
            return None
        return list(self._cache.values())

    async def sync(self) -> bool:
        """
        Reload all channels from the store into the cache.

        The cache is replaced wholesale. On failure the previous snapshot is
        kept.

        Returns:
            True if the cache was reloaded.
        """
        try:
            async with self._db.session() as session:
                records = await ChannelRepository(session).list_all()
                channels = [Channel.model_validate(record) for record in records]
        except SQLAlchemyError:
            logger.warning("Channel sync failed, keeping cached channels", exc_info=True)
            return False

        self._cache = {channel.name: channel for channel in channels}
        logger.debug("Synced channels", extra={"count": len(channels)})
        return True

    async def clear(self) -> bool:
        """
        Delete every channel. Debug mode only.

        Returns:
            True if the channels were deleted; False in release mode or on a
            store error.
        """
        if self._mode != QueueMode.DEBUG:
            logger.warning('The "clear" operation on channels is only allowed in debug mode')
            return False

        try:
            async with self._db.session() as session:
                count = await ChannelRepository(session).delete_all()
        except SQLAlchemyError:
            logger.exception("Failed to clear channels")
            return False

        self._cache = {}
        logger.info(f"Cleared {count} channels")
        return True
