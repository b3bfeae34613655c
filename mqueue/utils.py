"""Small shared helpers."""

from datetime import datetime, timezone
from uuid import uuid4


def utcnow() -> datetime:
    """
    Current time as a naive UTC datetime.

    All stored timestamps are naive UTC so they compare consistently on
    every supported backend.
    """
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_ack_token() -> str:
    """Generate a fresh ack token."""
    return str(uuid4())
