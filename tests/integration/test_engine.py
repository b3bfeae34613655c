"""
Integration tests for the queue engine and message lifecycle.
"""

import asyncio
from datetime import timedelta

import pytest

from mqueue.config import Settings
from mqueue.engine import QueueEngine
from mqueue.errors import EngineStartupError
from mqueue.reaper import Reaper
from mqueue.types import Channel, Message


class TestEngineLifecycle:
    """Tests for starting and stopping engines."""

    async def test_accessors_before_start(self, test_settings: Settings):
        engine = QueueEngine(test_settings)

        assert engine.started is False
        with pytest.raises(RuntimeError):
            engine.channels
        with pytest.raises(RuntimeError):
            engine.messages

    async def test_unreachable_store(self, test_settings: Settings):
        """Test that an unusable database aborts startup."""
        settings = test_settings.model_copy(
            update={"database_url": "sqlite+aiosqlite:////nonexistent-dir/mqueue.db"}
        )
        engine = QueueEngine(settings, background=False)

        with pytest.raises(EngineStartupError):
            await engine.start()

        assert engine.started is False

    async def test_context_manager(self, test_settings: Settings):
        async with QueueEngine(test_settings, background=False) as engine:
            assert engine.started is True
            assert await engine.channels.create(Channel(name="ctx"))

        assert engine.started is False

    async def test_background_sync_picks_up_remote_channels(self, test_settings: Settings, wait_until):
        """Test that the periodic sync loads channels created elsewhere."""
        settings = test_settings.model_copy(update={"channel_sync_interval_seconds": 0.05})

        async with QueueEngine(settings) as watcher_side:
            async with QueueEngine(settings, background=False) as writer_side:
                await writer_side.messages.clear()
                await writer_side.channels.clear()
                assert await writer_side.channels.create(Channel(name="remote"))

            async def synced() -> bool:
                return watcher_side.channels.get("remote") is not None

            await wait_until(synced)

    async def test_reaper_purges_old_finished_messages(self, engine: QueueEngine, channel: Channel):
        """Test that a reaper pass removes only finished messages."""
        await engine.messages.add(
            Message(channel="c", payload=1),
            Message(channel="c", payload=2),
        )
        leased = await engine.messages.get("c")
        assert await engine.messages.ack(leased.ack)

        reaper = Reaper(engine.messages, retention=timedelta(0), interval_seconds=3600)
        purged = await reaper.run_once()

        assert purged == 1
        assert await engine.messages.total("c") == 1
        assert await engine.messages.size("c") == 1


class TestMessageLifecycle:
    """End-to-end lease, retry and dead-letter scenarios."""

    async def test_retry_until_dead(self, engine: QueueEngine, expire_lease):
        """Test a message redelivered until it exceeds max_tries."""
        assert await engine.channels.create(Channel(name="c", max_tries=2))
        assert await engine.messages.add(Message(channel="c", payload={"job": 1}))

        first = await engine.messages.get("c")
        assert first.tries == 1
        assert await engine.messages.in_flight("c") == 1

        await expire_lease(first.id)
        second = await engine.messages.get("c")
        assert second.id == first.id
        assert second.tries == 2
        assert second.ack != first.ack
        assert await engine.messages.ack(first.ack) is False

        await expire_lease(second.id)
        assert await engine.messages.get("c") is None

        stats = await engine.messages.stats("c")
        assert stats.dead == 1
        assert stats.total == 1
        assert stats.size == 0
        assert stats.in_flight == 0
        assert stats.done == 0
        assert await engine.messages.ack(second.ack) is False

    async def test_competing_consumers_lease_once(self, engine: QueueEngine, channel: Channel):
        """Test that concurrent gets hand one message to exactly one caller."""
        assert await engine.messages.add(Message(channel="c", payload="only"))

        results = await asyncio.gather(*(engine.messages.get("c") for _ in range(10)))

        leased = [message for message in results if message is not None]
        assert len(leased) == 1
        assert leased[0].payload == "only"

    async def test_competing_engines_lease_once(
        self,
        engine: QueueEngine,
        channel: Channel,
        test_settings: Settings,
    ):
        """Test that two engines on one store never lease the same message."""
        await engine.messages.add(*(Message(channel="c", payload=n) for n in range(6)))

        async with QueueEngine(test_settings, background=False) as other:
            results = await asyncio.gather(
                *(engine.messages.get("c") for _ in range(4)),
                *(other.messages.get("c") for _ in range(4)),
            )

        ids = [message.id for message in results if message is not None]
        assert len(ids) == 6
        assert len(set(ids)) == 6

    async def test_deleted_channel_orphans_messages(self, engine: QueueEngine, channel: Channel):
        """Test that messages of a deleted channel stay stored but unleasable."""
        await engine.messages.add(Message(channel="c", payload=1))

        assert await engine.channels.delete("c")

        assert await engine.messages.get("c") is None
        assert await engine.messages.add(Message(channel="c", payload=2)) is False
        assert await engine.messages.total("c") == 1


class TestWatch:
    """Tests for streaming messages with watchers."""

    async def test_watch_yields_messages(self, engine: QueueEngine, channel: Channel):
        await engine.messages.add(*(Message(channel="c", payload=n) for n in range(3)))

        received = []
        async with engine.messages.watch("c", interval=0.01) as watcher:
            async for message in watcher:
                received.append(message.payload)
                assert await engine.messages.ack(message.ack)
                if len(received) == 3:
                    break

        assert sorted(received) == [0, 1, 2]
        assert await engine.messages.done("c") == 3

    async def test_close_ends_pending_iteration(self, engine: QueueEngine, channel: Channel):
        """Test that closing a watcher wakes a consumer waiting on an empty channel."""
        watcher = engine.messages.watch("c", interval=0.01)

        async def consume() -> list:
            return [message async for message in watcher]

        consumer = asyncio.create_task(consume())
        await asyncio.sleep(0.05)
        await watcher.close()

        assert await asyncio.wait_for(consumer, timeout=1.0) == []
        assert watcher.closed is True

    async def test_close_keeps_undelivered_messages(self, engine: QueueEngine):
        """Test that closing a watcher leaves messages nobody received deliverable."""
        assert await engine.channels.create(Channel(name="p", max_tries=1))
        await engine.messages.add(Message(channel="p", payload=1), Message(channel="p", payload=2))

        watcher = engine.messages.watch("p", interval=0.01)
        first = await anext(watcher)
        assert await engine.messages.ack(first.ack)
        await asyncio.sleep(0.1)
        await watcher.close()

        assert await engine.messages.in_flight("p") == 0
        assert await engine.messages.size("p") == 1
        second = await engine.messages.get("p")
        assert second is not None
        assert second.tries == 1
        assert await engine.messages.dead("p") == 0

    async def test_abandoned_wait_does_not_lease(self, engine: QueueEngine):
        """Test that a consumer giving up on a wait leaves later messages in the queue."""
        assert await engine.channels.create(Channel(name="p", max_tries=1))
        watcher = engine.messages.watch("p", interval=0.01)

        with pytest.raises(TimeoutError):
            await asyncio.wait_for(anext(watcher), timeout=0.05)

        await engine.messages.add(Message(channel="p", payload=1))
        await asyncio.sleep(0.1)

        assert await engine.messages.in_flight("p") == 0
        await watcher.close()

        message = await engine.messages.get("p")
        assert message.payload == 1
        assert message.tries == 1

    async def test_concurrent_consumers_share_watcher(self, engine: QueueEngine, channel: Channel):
        """Test that every consumer waiting on one watcher is served."""
        watcher = engine.messages.watch("c", interval=0.01)
        waits = [asyncio.create_task(anext(watcher)) for _ in range(2)]
        await asyncio.sleep(0.05)

        await engine.messages.add(Message(channel="c", payload=1), Message(channel="c", payload=2))

        received = await asyncio.wait_for(asyncio.gather(*waits), timeout=2.0)
        await watcher.close()

        assert sorted(message.payload for message in received) == [1, 2]
        assert await engine.messages.in_flight("c") == 2

    async def test_explicit_zero_interval(self, engine: QueueEngine, channel: Channel):
        watcher = engine.messages.watch("c", interval=0)

        assert watcher.interval == 0
        await watcher.close()

    async def test_watchers_compete(self, engine: QueueEngine, channel: Channel, wait_until):
        """Test that two watchers on one channel split its messages."""
        await engine.messages.add(*(Message(channel="c", payload=n) for n in range(4)))
        received = []

        async def drain(watcher) -> None:
            async for message in watcher:
                received.append(message.id)
                await engine.messages.ack(message.ack)

        first = engine.messages.watch("c", interval=0.01)
        second = engine.messages.watch("c", interval=0.01)
        tasks = [asyncio.create_task(drain(first)), asyncio.create_task(drain(second))]
        try:
            async def drained() -> bool:
                return await engine.messages.done("c") == 4

            await wait_until(drained)
        finally:
            await first.close()
            await second.close()
            await asyncio.gather(*tasks)

        assert len(received) == 4
        assert len(set(received)) == 4


class TestReaper:
    """Tests for the retention reaper loop."""

    async def test_stop_interrupts_sweep_interval(self, engine: QueueEngine):
        """Test that stopping does not wait out the interval between sweeps."""
        reaper = Reaper(engine.messages, retention=timedelta(days=7), interval_seconds=3600)
        task = asyncio.create_task(reaper.start())
        await asyncio.sleep(0.05)

        await reaper.stop()

        await asyncio.wait_for(task, timeout=1.0)
