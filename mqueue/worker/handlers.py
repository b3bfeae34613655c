"""
Message handler registry.

Handlers are registered per channel. They must be idempotent: delivery is
at-least-once, so a message may be handled again after a lost lease or a
worker crash.
"""

import logging
import time
from typing import Awaitable, Callable

from mqueue.types.handler import HandlerContext, HandlerResult

logger = logging.getLogger(__name__)

# Type alias for message handler functions
MessageHandler = Callable[[HandlerContext], Awaitable[HandlerResult]]


class HandlerRegistry:
    """Maps channel names to message handlers."""

    def __init__(self) -> None:
        self._handlers: dict[str, MessageHandler] = {}

    def register(self, channel: str) -> Callable[[MessageHandler], MessageHandler]:
        """
        Decorator to register the handler of a channel.

        Args:
            channel: The channel this handler consumes.

        Returns:
            Decorator function.

        Example:
            @handlers.register("emails")
            async def send_email(context: HandlerContext) -> HandlerResult:
                ...
        """
        def decorator(handler: MessageHandler) -> MessageHandler:
            self._handlers[channel] = handler
            logger.info(f"Registered handler for channel: {channel}")
            return handler
        return decorator

    def get(self, channel: str) -> MessageHandler | None:
        return self._handlers.get(channel)

    def channels(self) -> list[str]:
        """List all channels with a handler."""
        return list(self._handlers.keys())

    async def execute(self, context: HandlerContext) -> HandlerResult:
        """
        Handle a message with the handler of its channel.

        Exceptions raised by the handler become failed results.

        Args:
            context: The handler context.

        Returns:
            HandlerResult from the handler, with its duration filled in.
        """
        channel = context.message.channel
        handler = self.get(channel)

        if handler is None:
            logger.error(
                f"No handler for channel: {channel}",
                extra={"message_id": str(context.message.id)}
            )
            return HandlerResult(success=False, error=f"No handler for channel: {channel}")

        start = time.perf_counter()
        try:
            result = await handler(context)
        except Exception as e:
            logger.exception(
                "Handler raised",
                extra={"message_id": str(context.message.id), "channel": channel}
            )
            result = HandlerResult(success=False, error=f"Handler exception: {e}")

        if result.duration_ms is None:
            result.duration_ms = (time.perf_counter() - start) * 1000
        return result


# Process-wide registry used by the ``register_handler`` decorator
default_registry = HandlerRegistry()


def register_handler(channel: str) -> Callable[[MessageHandler], MessageHandler]:
    """Register a handler on the default registry."""
    return default_registry.register(channel)
