"""
SQLAlchemy database models.
Defines the channel and message tables.
"""

from datetime import datetime, timedelta
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import JSON, Boolean, DateTime, Index, Integer, Interval, String, Uuid
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from mqueue.constants import CHANNEL_TABLE, MESSAGE_TABLE, UNLIMITED_TRIES

PayloadType = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class ChannelRecord(Base):
    """
    Channel definition row.

    ``name`` is unique; duplicate inserts fail with an integrity error.
    """

    __tablename__ = CHANNEL_TABLE

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    name: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    visibility: Mapped[timedelta] = mapped_column(Interval, nullable=False)
    max_tries: Mapped[int] = mapped_column(Integer, nullable=False, default=UNLIMITED_TRIES)

    def __repr__(self) -> str:
        return f"ChannelRecord(name={self.name}, visibility={self.visibility}, max_tries={self.max_tries})"


class MessageRecord(Base):
    """
    Message row.

    A message is deliverable iff ``deleted`` is NULL, ``dead`` is false and
    ``visible`` is not in the future. ``deleted`` doubles as the completion
    timestamp and drives retention.
    """

    __tablename__ = MESSAGE_TABLE

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    channel: Mapped[str] = mapped_column(String(255), nullable=False)
    payload: Mapped[Any] = mapped_column(PayloadType, nullable=False)
    ack: Mapped[str] = mapped_column(String(64), nullable=False)
    tries: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    visible: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    dead: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    deleted: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    __table_args__ = (
        # Lease polling
        Index("ix_queue_messages_poll", "channel", "visible", "dead", "deleted"),
        # Ack / ping liveness checks
        Index("ix_queue_messages_ack_live", "ack", "visible", "dead", "deleted"),
        Index("uq_queue_messages_ack", "ack", unique=True),
        # Retention sweeps
        Index("ix_queue_messages_deleted", "deleted"),
    )

    def __repr__(self) -> str:
        return (
            f"MessageRecord(id={self.id}, channel={self.channel}, "
            f"tries={self.tries}, dead={self.dead})"
        )
