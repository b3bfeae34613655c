"""
Message-related type definitions.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, TypeVar
from uuid import UUID

from pydantic import BaseModel, TypeAdapter, ValidationError

from mqueue.constants import MessageState

T = TypeVar("T")

INT32_MIN, INT32_MAX = -(2**31), 2**31 - 1
INT64_MIN, INT64_MAX = -(2**63), 2**63 - 1


@dataclass
class Message:
    """
    A message to enqueue.

    The message becomes deliverable ``delay`` after it is added.
    """

    channel: str
    payload: Any
    delay: timedelta = field(default_factory=timedelta)


def _as_int(value: Any, low: int, high: int) -> int | None:
    # bool is an int subclass but never a valid integer payload
    if isinstance(value, bool) or not isinstance(value, int):
        return None
    if not low <= value <= high:
        return None
    return value


@dataclass
class QueueMessage:
    """
    A leased message handed to a consumer.

    ``ack`` is the token for this delivery only; it is rotated on every
    lease, so a stale copy can neither ack nor ping the message.
    """

    id: UUID
    channel: str
    payload: Any
    ack: str
    tries: int
    visible: datetime
    dead: bool = False
    deleted: datetime | None = None

    def state(self, now: datetime) -> MessageState:
        """Derive the lifecycle state of this snapshot at ``now``."""
        if self.dead:
            return MessageState.DEAD
        if self.deleted is not None:
            return MessageState.COMPLETED
        if self.visible > now:
            return MessageState.LEASED
        return MessageState.PENDING

    def as_int32(self) -> int | None:
        return _as_int(self.payload, INT32_MIN, INT32_MAX)

    def as_int64(self) -> int | None:
        return _as_int(self.payload, INT64_MIN, INT64_MAX)

    def as_float64(self) -> float | None:
        if isinstance(self.payload, bool):
            return None
        if isinstance(self.payload, (int, float)):
            return float(self.payload)
        return None

    def as_str(self) -> str | None:
        return self.payload if isinstance(self.payload, str) else None

    def as_bool(self) -> bool | None:
        return self.payload if isinstance(self.payload, bool) else None

    def decode(self, target: type[T]) -> T | None:
        """
        Validate a document payload into ``target``.

        Args:
            target: A pydantic model, dataclass or TypedDict type.

        Returns:
            The decoded value, or None if the payload is not a document
            or does not fit ``target``.
        """
        if not isinstance(self.payload, dict):
            return None
        try:
            return TypeAdapter(target).validate_python(self.payload)
        except ValidationError:
            return None

    def decode_many(self, target: type[T]) -> list[T] | None:
        """
        Validate an array payload element-wise into a list of ``target``.

        Returns:
            The decoded list, or None if the payload is not an array or any
            element does not fit ``target``.
        """
        if not isinstance(self.payload, list):
            return None
        try:
            return TypeAdapter(list[target]).validate_python(self.payload)
        except ValidationError:
            return None


class QueueStats(BaseModel):
    """Point-in-time message counts, optionally for a single channel."""

    channel: str | None = None
    total: int
    size: int
    in_flight: int
    done: int
    dead: int
