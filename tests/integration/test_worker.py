"""
Integration tests for worker functionality.
"""

import asyncio
from datetime import timedelta

import pytest

from mqueue.engine import QueueEngine
from mqueue.types import Channel, HandlerContext, HandlerResult, Message
from mqueue.worker import HandlerRegistry, Worker


class TestWorkerIntegration:
    """Integration tests for worker message processing."""

    async def test_successful_handler_acks(self, engine: QueueEngine, channel: Channel, wait_until):
        """Test complete lifecycle: add -> lease -> handle -> ack."""
        handlers = HandlerRegistry()
        seen = []

        @handlers.register("c")
        async def handle(context: HandlerContext) -> HandlerResult:
            seen.append(context.message.payload)
            return HandlerResult(success=True)

        await engine.messages.add(
            Message(channel="c", payload={"n": 1}),
            Message(channel="c", payload={"n": 2}),
        )

        worker = Worker(engine, handlers=handlers, worker_id="test-worker")
        task = asyncio.create_task(worker.start())
        try:
            async def all_done() -> bool:
                return await engine.messages.done("c") == 2

            await wait_until(all_done)
        finally:
            await worker.stop()
            await task

        assert sorted(item["n"] for item in seen) == [1, 2]
        stats = await engine.messages.stats("c")
        assert stats.size == 0
        assert stats.in_flight == 0

    async def test_failing_handler_dead_letters(self, engine: QueueEngine, wait_until):
        """Test that an unacked message is redelivered until max_tries kills it."""
        assert await engine.channels.create(
            Channel(name="flaky", visibility=timedelta(milliseconds=200), max_tries=1)
        )
        handlers = HandlerRegistry()
        attempts = []

        @handlers.register("flaky")
        async def handle(context: HandlerContext) -> HandlerResult:
            attempts.append(context.attempt)
            raise RuntimeError("always fails")

        await engine.messages.add(Message(channel="flaky", payload="x"))

        worker = Worker(engine, handlers=handlers)
        task = asyncio.create_task(worker.start())
        try:
            async def is_dead() -> bool:
                return await engine.messages.dead("flaky") == 1

            await wait_until(is_dead)
        finally:
            await worker.stop()
            await task

        assert attempts == [1]
        assert await engine.messages.done("flaky") == 0

    async def test_heartbeat_keeps_long_handler_lease(self, engine: QueueEngine, wait_until):
        """Test that a handler outliving the visibility window still acks."""
        assert await engine.channels.create(
            Channel(name="slow", visibility=timedelta(milliseconds=300), max_tries=1)
        )
        handlers = HandlerRegistry()

        @handlers.register("slow")
        async def handle(context: HandlerContext) -> HandlerResult:
            await asyncio.sleep(0.8)
            return HandlerResult(success=True)

        await engine.messages.add(Message(channel="slow", payload=1))

        worker = Worker(engine, handlers=handlers, heartbeat_interval=0.1)
        task = asyncio.create_task(worker.start())
        try:
            async def is_done() -> bool:
                return await engine.messages.done("slow") == 1

            await wait_until(is_done)
        finally:
            await worker.stop()
            await task

        assert await engine.messages.dead("slow") == 0

    async def test_worker_without_channels(self, engine: QueueEngine):
        """Test that a worker refuses to start with nothing to consume."""
        worker = Worker(engine, handlers=HandlerRegistry())

        with pytest.raises(ValueError):
            await worker.start()

    async def test_explicit_intervals_are_kept(self, engine: QueueEngine):
        """Test that explicit intervals override the settings instead of being treated as unset."""
        worker = Worker(engine, channels=["c"], poll_interval=0, heartbeat_interval=0.5)

        assert worker.poll_interval == 0
        assert worker.heartbeat_interval == 0.5
