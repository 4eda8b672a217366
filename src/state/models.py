from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class SchedulerKind(str, Enum):
    CRON = "cron"
    SYSTEMD = "systemd"
    NONE = "none"

    @property
    def other(self) -> "SchedulerKind":
        """The opposite backend (cron <-> systemd); NONE maps to NONE."""
        if self is SchedulerKind.CRON:
            return SchedulerKind.SYSTEMD
        if self is SchedulerKind.SYSTEMD:
            return SchedulerKind.CRON
        return SchedulerKind.NONE


# Literal role strings written by earlier installs instead of a scheduler kind
LEGACY_ROLES = ("primary", "fallback")


class RenewalState(BaseModel):
    """
    Scheduler roles persisted as marker files.

    Fields
    - primary: scheduler currently responsible for renewals. `None` when no
      marker exists, or when the marker only records the role (legacy
      "primary" content) and the kind must be detected from the live system.
    - primary_recorded: True when a primary marker file exists at all.
    - fallback: scheduler installed but held in standby, if any.
    - failed_primary: scheduler that last failed its health check.
    """

    primary: Optional[SchedulerKind] = None
    primary_recorded: bool = False
    fallback: Optional[SchedulerKind] = None
    fallback_recorded: bool = False
    failed_primary: Optional[SchedulerKind] = None

    @classmethod
    def empty(cls) -> "RenewalState":
        return cls()


class FailoverEvent(BaseModel):
    """One line of the failover history file."""

    timestamp: datetime
    old: str = Field(description="Scheduler that was primary before the failover")
    new: str = Field(description="Scheduler detected as primary afterwards")

    def to_line(self) -> str:
        return f"{self.timestamp.isoformat(timespec='seconds')}: {self.old} -> {self.new}"
