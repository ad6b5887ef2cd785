"""Archival and stale-row purge for live option contracts."""

from .manager import LifecycleManager, LifecycleResult
from .scheduler import LifecycleScheduler, is_archival_window, week_key

__all__ = [
    "LifecycleManager",
    "LifecycleResult",
    "LifecycleScheduler",
    "is_archival_window",
    "week_key",
]
