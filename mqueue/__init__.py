"""
mqueue - lease-based multi-channel message queue.

An embeddable work queue on top of a shared SQL store, providing at-least-once
delivery with visibility timeouts, retry tracking and dead-lettering.
"""

from mqueue.constants import MessageState, QueueMode
from mqueue.engine import QueueEngine
from mqueue.errors import EngineStartupError, MQueueError, StatsError
from mqueue.registry import ChannelRegistry
from mqueue.store import MessageStore, MessageWatcher
from mqueue.types import Channel, Message, QueueMessage, QueueStats

__version__ = "1.0.0"

__all__ = [
    "QueueEngine",
    "ChannelRegistry",
    "MessageStore",
    "MessageWatcher",
    "Channel",
    "Message",
    "QueueMessage",
    "QueueStats",
    "QueueMode",
    "MessageState",
    "MQueueError",
    "EngineStartupError",
    "StatsError",
]
