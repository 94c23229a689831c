"""
Tag-based release triggers.
"""

from .trigger import ReleaseTrigger, TriggerResult, TriggerStatus
from .watcher import ReleaseWatcher

__all__ = ["ReleaseTrigger", "ReleaseWatcher", "TriggerResult", "TriggerStatus"]
