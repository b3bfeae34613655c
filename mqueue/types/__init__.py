"""
Type definitions for the queue engine.
Contains the channel, message and handler types shared across modules.
"""

from mqueue.types.channel import Channel
from mqueue.types.handler import HandlerContext, HandlerResult
from mqueue.types.message import Message, QueueMessage, QueueStats

__all__ = [
    # Channel types
    "Channel",
    # Message types
    "Message",
    "QueueMessage",
    "QueueStats",
    # Handler types
    "HandlerContext",
    "HandlerResult",
]
