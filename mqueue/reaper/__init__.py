"""
Reaper module.
Contains the retention reaper that purges finished messages.
"""

from mqueue.reaper.main import Reaper, run

__all__ = ["Reaper", "run"]
