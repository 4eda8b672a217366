from __future__ import annotations

import re
from pathlib import Path
from typing import List, Optional, Pattern

from .system import CommandError, CommandRunner


RENEWAL_HOOK_PROGRAM = "tak-letsencrypt-renewal"
FAILOVER_PROGRAM = "tak-renewal-failover"

# Identify our entries inside a shared user crontab
RENEWAL_JOB_PATTERN = re.compile(r"certbot renew.*letsencrypt-renewal")
HEALTH_JOB_PATTERN = re.compile(re.escape(FAILOVER_PROGRAM))

DEFAULT_SCHEDULE = "0 2 * * 0"  # Sunday 02:00
FALLBACK_SCHEDULE = "0 3 * * 0"  # Sunday 03:00
HEALTH_SCHEDULE = "0 1 * * *"  # daily 01:00

CERTBOT = "/usr/bin/certbot"


def validate_schedule(expr: str) -> str:
    """Return the normalized 5-field cron expression or raise ValueError."""
    fields = (expr or "").split()
    if len(fields) != 5:
        raise ValueError(f"Invalid cron schedule (expected 5 fields): {expr!r}")
    return " ".join(fields)


def describe_schedule(expr: str) -> str:
    """Human summary of a cron schedule, e.g. "Every Sunday at 2:00"."""
    fields = expr.split()
    if len(fields) != 5:
        return f"Custom schedule: {expr}"
    minute, hour, dom, month, dow = fields
    if dom == "*" and month == "*" and minute.isdigit() and hour.isdigit():
        at = f"{int(hour)}:{int(minute):02d}"
        if dow == "0":
            return f"Every Sunday at {at}"
        return f"Every day at {at}"
    return f"Custom schedule: {expr}"


def hook_command(program: str, config_file: Optional[str] = None) -> str:
    return f"{program} {config_file}" if config_file else program


def build_renewal_job(schedule: str, hook: str, cron_log: Path) -> str:
    return (
        f'{validate_schedule(schedule)} {CERTBOT} renew --quiet --deploy-hook "{hook}" '
        f">> {cron_log} 2>&1"
    )


def build_health_job(failover_program: str, config_file: Optional[str], system_log: Path) -> str:
    cfg = f" {config_file}" if config_file else ""
    return f"{HEALTH_SCHEDULE} {failover_program}{cfg} check >> {system_log} 2>&1"


class Crontab:
    """
    Read/modify the invoking user's crontab through the `crontab` binary.

    `crontab -l` exits non-zero when the user has no crontab yet; that is
    treated as an empty table rather than an error.
    """

    def __init__(self, runner: CommandRunner) -> None:
        self._runner = runner

    def available(self) -> bool:
        return self._runner.which("crontab") is not None

    def read(self) -> List[str]:
        res = self._runner.run(["crontab", "-l"])
        if not res.ok:
            return []
        return [line for line in res.stdout.splitlines() if line.strip()]

    def write(self, lines: List[str]) -> None:
        body = "".join(f"{line}\n" for line in lines)
        res = self._runner.run(["crontab", "-"], input=body)
        if not res.ok:
            raise CommandError(["crontab", "-"], res.returncode, res.stderr)

    def matching(self, pattern: Pattern[str] = RENEWAL_JOB_PATTERN) -> List[str]:
        return [line for line in self.read() if pattern.search(line)]

    def has_job(self, pattern: Pattern[str] = RENEWAL_JOB_PATTERN) -> bool:
        return bool(self.matching(pattern))

    def add(self, line: str) -> None:
        lines = self.read()
        lines.append(line)
        self.write(lines)

    def replace(self, pattern: Pattern[str], line: str) -> None:
        """Drop entries matching `pattern` and append `line` in one write."""
        lines = [ln for ln in self.read() if not pattern.search(ln)]
        lines.append(line)
        self.write(lines)

    def remove_matching(self, pattern: Pattern[str] = RENEWAL_JOB_PATTERN) -> int:
        lines = self.read()
        kept = [ln for ln in lines if not pattern.search(ln)]
        removed = len(lines) - len(kept)
        if removed:
            self.write(kept)
        return removed

    def service_running(self) -> bool:
        if self._runner.run(["systemctl", "is-active", "cron"]).ok:
            return True
        return self._runner.run(["service", "cron", "status"]).ok


__all__ = [
    "Crontab",
    "RENEWAL_JOB_PATTERN",
    "HEALTH_JOB_PATTERN",
    "RENEWAL_HOOK_PROGRAM",
    "FAILOVER_PROGRAM",
    "DEFAULT_SCHEDULE",
    "FALLBACK_SCHEDULE",
    "HEALTH_SCHEDULE",
    "validate_schedule",
    "describe_schedule",
    "hook_command",
    "build_renewal_job",
    "build_health_job",
]
