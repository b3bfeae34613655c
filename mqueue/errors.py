"""
Exception types raised by the queue engine.

Most queue operations report failure as a boolean or ``None``; exceptions are
reserved for conditions callers must not mistake for an empty queue.
"""


class MQueueError(Exception):
    """Base class for engine errors."""


class EngineStartupError(MQueueError):
    """The engine could not reach its store or provision its schema."""


class StatsError(MQueueError):
    """A statistics query failed in the store."""
