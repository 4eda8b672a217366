from __future__ import annotations

import os
import re
from datetime import datetime
from pathlib import Path
from typing import List, Optional
from uuid import uuid4

from .models import LEGACY_ROLES, FailoverEvent, RenewalState, SchedulerKind


ENV_STATE_DIR = "TAK_RENEWAL_STATE_DIR"
DEFAULT_STATE_DIR = "/var/lib"

PRIMARY_MARKER = "tak-renewal-primary"
FALLBACK_MARKER = "tak-renewal-fallback"
FAILED_MARKER = "tak-renewal-failed-primary"
HISTORY_FILE = "tak-renewal-failover-history"
# Schedule cron uses whenever it becomes primary
CRON_SCHEDULE_MARKER = "tak-renewal-cron-schedule"

# "<iso timestamp>: <old> -> <new>"; the timestamp itself contains colons
_HISTORY_RE = re.compile(r"^(?P<ts>\S+):\s+(?P<old>\S+)\s+->\s+(?P<new>\S+)\s*$")


class MarkerError(ValueError):
    """A marker file holds something other than a scheduler kind or legacy role."""


def _parse_kind(raw: str, marker: str) -> Optional[SchedulerKind]:
    value = raw.strip().lower()
    if value in LEGACY_ROLES or value == "":
        return None
    try:
        kind = SchedulerKind(value)
    except ValueError as ex:
        raise MarkerError(f"Unrecognized content in marker {marker}: {raw.strip()!r}") from ex
    return None if kind is SchedulerKind.NONE else kind


def _parse_history_line(line: str) -> Optional[FailoverEvent]:
    m = _HISTORY_RE.match(line.strip())
    if not m:
        return None
    try:
        ts = datetime.fromisoformat(m.group("ts"))
    except ValueError:
        return None
    return FailoverEvent(timestamp=ts, old=m.group("old"), new=m.group("new"))


class MarkerStore:
    """
    Flat-file persistence for `RenewalState`.

    Usage
    - Each role is one small file under `state_dir` holding a scheduler kind
      ("cron" or "systemd"). Missing files mean "not recorded".
    - `read()` returns the current `RenewalState`; legacy "primary"/"fallback"
      contents are reported as recorded-but-unknown kinds.
    - Writes go through a temp file + rename so a reader never sees a torn marker.
    - Failover history is an append-only text file, one event per line.

    Environment variables (optional)
    - `TAK_RENEWAL_STATE_DIR`: directory holding the markers (default /var/lib)
    """

    def __init__(self, state_dir: os.PathLike[str] | str = DEFAULT_STATE_DIR) -> None:
        self._dir = Path(state_dir)

    # -------- Construction helpers --------
    @classmethod
    def from_env(cls) -> "MarkerStore":
        return cls(os.environ.get(ENV_STATE_DIR) or DEFAULT_STATE_DIR)

    @property
    def state_dir(self) -> Path:
        return self._dir

    def path(self, name: str) -> Path:
        return self._dir / name

    # -------- Core operations --------
    def read(self) -> RenewalState:
        """Load marker files into a RenewalState.

        Raises:
        - MarkerError if a marker holds something other than a scheduler kind
          or a legacy role string.
        """
        state = RenewalState.empty()
        primary = self._read_marker(PRIMARY_MARKER)
        if primary is not None:
            state.primary_recorded = True
            state.primary = _parse_kind(primary, PRIMARY_MARKER)
        fallback = self._read_marker(FALLBACK_MARKER)
        if fallback is not None:
            state.fallback_recorded = True
            state.fallback = _parse_kind(fallback, FALLBACK_MARKER)
        failed = self._read_marker(FAILED_MARKER)
        if failed is not None:
            # Older installs wrote the literal "failed" here
            state.failed_primary = None if failed.strip() == "failed" else _parse_kind(failed, FAILED_MARKER)
        return state

    def set_primary(self, kind: SchedulerKind) -> None:
        self._write_marker(PRIMARY_MARKER, kind.value)

    def set_fallback(self, kind: Optional[SchedulerKind]) -> None:
        if kind is None or kind is SchedulerKind.NONE:
            self.path(FALLBACK_MARKER).unlink(missing_ok=True)
            return
        self._write_marker(FALLBACK_MARKER, kind.value)

    def mark_failed(self, kind: SchedulerKind) -> None:
        self._write_marker(FAILED_MARKER, kind.value)

    def set_cron_schedule(self, schedule: Optional[str]) -> None:
        if not schedule:
            self.path(CRON_SCHEDULE_MARKER).unlink(missing_ok=True)
            return
        self._write_marker(CRON_SCHEDULE_MARKER, schedule)

    def cron_schedule(self) -> Optional[str]:
        raw = self._read_marker(CRON_SCHEDULE_MARKER)
        if raw is None:
            return None
        return raw.strip() or None

    def append_history(self, event: FailoverEvent) -> None:
        self._dir.mkdir(parents=True, exist_ok=True)
        with self.path(HISTORY_FILE).open("a", encoding="utf-8") as f:
            f.write(event.to_line() + "\n")

    def history(self, limit: Optional[int] = None) -> List[FailoverEvent]:
        """Parsed failover events, oldest first; malformed lines are skipped."""
        try:
            text = self.path(HISTORY_FILE).read_text(encoding="utf-8")
        except FileNotFoundError:
            return []
        events = [e for e in (_parse_history_line(ln) for ln in text.splitlines()) if e is not None]
        if limit is not None:
            return events[-limit:] if limit > 0 else []
        return events

    def clear(self) -> None:
        """Remove every marker and the failover history."""
        for name in (PRIMARY_MARKER, FALLBACK_MARKER, FAILED_MARKER, HISTORY_FILE, CRON_SCHEDULE_MARKER):
            self.path(name).unlink(missing_ok=True)
        # Per-kind promotion markers left by older installs
        for p in self._dir.glob(f"{PRIMARY_MARKER}-*"):
            p.unlink(missing_ok=True)

    # -------- Internals --------
    def _read_marker(self, name: str) -> Optional[str]:
        try:
            return self.path(name).read_text(encoding="utf-8")
        except FileNotFoundError:
            return None

    def _write_marker(self, name: str, value: str) -> None:
        self._dir.mkdir(parents=True, exist_ok=True)
        target = self.path(name)
        tmp = self._dir / f".{name}.tmp-{uuid4().hex}"
        try:
            tmp.write_text(value + "\n", encoding="utf-8")
            os.replace(tmp, target)
        finally:
            tmp.unlink(missing_ok=True)


__all__ = [
    "MarkerError",
    "MarkerStore",
    "CRON_SCHEDULE_MARKER",
    "PRIMARY_MARKER",
    "FALLBACK_MARKER",
    "FAILED_MARKER",
    "HISTORY_FILE",
]
