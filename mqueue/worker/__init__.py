"""
Worker module.
Contains the consumer worker and the per-channel handler registry.
"""

from mqueue.worker.handlers import HandlerRegistry, register_handler
from mqueue.worker.main import Worker, run

__all__ = ["Worker", "HandlerRegistry", "register_handler", "run"]
