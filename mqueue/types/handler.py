"""
Handler-related type definitions for the consumer worker.
"""

from dataclasses import dataclass

from pydantic import BaseModel

from mqueue.types.channel import Channel
from mqueue.types.message import QueueMessage


class HandlerResult(BaseModel):
    """
    Result of handling one message.
    Returned by message handlers after processing.
    """

    success: bool
    error: str | None = None
    duration_ms: float | None = None


@dataclass
class HandlerContext:
    """
    Context passed to message handlers.
    Contains the leased message and the policy of its channel.
    """

    message: QueueMessage
    channel: Channel
    worker_id: str

    @property
    def attempt(self) -> int:
        """The delivery attempt this lease represents, starting at 1."""
        return self.message.tries

    @property
    def is_last_attempt(self) -> bool:
        """Check if a failure now will dead-letter the message."""
        return self.channel.limits_tries and self.attempt >= self.channel.max_tries

    @property
    def remaining_attempts(self) -> int | None:
        """Get remaining deliveries, or None if the channel retries forever."""
        if not self.channel.limits_tries:
            return None
        return max(0, self.channel.max_tries - self.attempt)
