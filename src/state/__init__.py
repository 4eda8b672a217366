"""
Renewal scheduler state persisted as flat marker files.

The marker files record which scheduler (cron or systemd) is primary, which
is held in standby, which last failed, and an append-only failover history.
"""

from .marker_store import MarkerError, MarkerStore
from .models import FailoverEvent, RenewalState, SchedulerKind

__all__ = ["FailoverEvent", "MarkerError", "MarkerStore", "RenewalState", "SchedulerKind"]
