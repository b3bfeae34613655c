"""
Engine constants.
Centralized location for all constant values used across the package.
"""

from enum import StrEnum


class QueueMode(StrEnum):
    """
    Operating mode.

    Destructive bulk operations (clearing channels or messages) are only
    permitted in DEBUG mode; RELEASE refuses them.
    """

    DEBUG = "debug"
    RELEASE = "release"


class MessageState(StrEnum):
    """
    Message lifecycle states, derived from stored fields.

    State transitions:
    - PENDING -> LEASED (lease acquired)
    - LEASED -> COMPLETED (ack)
    - LEASED -> PENDING (lease expired without ack)
    - PENDING -> DEAD (lease attempted past max_tries)
    """

    PENDING = "pending"
    LEASED = "leased"
    COMPLETED = "completed"
    DEAD = "dead"


# Default values
DEFAULT_VISIBILITY_SECONDS = 300
DEFAULT_CHANNEL_SYNC_INTERVAL_SECONDS = 60
DEFAULT_RETENTION_SECONDS = 3600 * 24 * 7
UNLIMITED_TRIES = 0

# Table names
CHANNEL_TABLE = "queue_channels"
MESSAGE_TABLE = "queue_messages"

# Metrics names
METRIC_QUEUE_DEPTH = "mqueue_queue_depth"
METRIC_MESSAGES_ENQUEUED = "mqueue_messages_enqueued_total"
METRIC_LEASES_ACQUIRED = "mqueue_leases_acquired_total"
METRIC_MESSAGES_ACKED = "mqueue_messages_acked_total"
METRIC_LEASES_EXTENDED = "mqueue_leases_extended_total"
METRIC_MESSAGES_DEAD = "mqueue_messages_dead_lettered_total"
METRIC_MESSAGES_PURGED = "mqueue_messages_purged_total"
METRIC_HANDLER_DURATION = "mqueue_handler_duration_seconds"

# Trace span names
SPAN_ENQUEUE = "enqueue"
SPAN_ACQUIRE_LEASE = "acquire_lease"
SPAN_ACK_MESSAGE = "ack_message"
SPAN_HANDLE_MESSAGE = "handle_message"
