"""
Database module.
Contains the connection handle, models and repository implementations.
"""

from mqueue.db.connection import Database
from mqueue.db.models import Base, ChannelRecord, MessageRecord
from mqueue.db.repository import ChannelRepository, MessageRepository

__all__ = [
    "Database",
    "Base",
    "ChannelRecord",
    "MessageRecord",
    "ChannelRepository",
    "MessageRepository",
]
