"""
Channel type definitions.
"""

from datetime import timedelta

from pydantic import BaseModel, ConfigDict

from mqueue.constants import UNLIMITED_TRIES


class Channel(BaseModel):
    """
    A named sub-queue and its delivery policy.

    Instances are immutable snapshots; the registry replaces its cached
    copies wholesale on every sync.
    """

    model_config = ConfigDict(frozen=True, from_attributes=True)

    name: str
    visibility: timedelta = timedelta(0)
    max_tries: int = UNLIMITED_TRIES

    @property
    def limits_tries(self) -> bool:
        """Check if the channel dead-letters messages after max_tries."""
        return self.max_tries > 0
