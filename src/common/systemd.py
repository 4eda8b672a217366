from __future__ import annotations

from pathlib import Path
from typing import Optional

from .system import CommandRunner


TIMER_UNIT = "letsencrypt-renewal.timer"
SERVICE_UNIT = "letsencrypt-renewal.service"

SERVICE_TEMPLATE = """\
[Unit]
Description=LetsEncrypt certificate renewal for TAK Server
After=network-online.target
Wants=network-online.target

[Service]
Type=oneshot
ExecStart=/usr/bin/certbot renew --quiet --deploy-hook "{hook}"
"""

TIMER_TEMPLATE = """\
[Unit]
Description=Weekly LetsEncrypt certificate renewal for TAK Server

[Timer]
OnCalendar=weekly
RandomizedDelaySec=1h
Persistent=true

[Install]
WantedBy=timers.target
"""


def render_service(hook: str) -> str:
    return SERVICE_TEMPLATE.format(hook=hook)


def render_timer() -> str:
    return TIMER_TEMPLATE


class Systemctl:
    """Queries and state changes for the renewal timer/service via `systemctl`."""

    def __init__(self, runner: CommandRunner) -> None:
        self._runner = runner

    def available(self) -> bool:
        return self._runner.run(["systemctl", "--version"]).ok

    # -------- Queries --------
    def is_active(self, unit: str = TIMER_UNIT) -> bool:
        return self._runner.run(["systemctl", "is-active", unit]).ok

    def is_enabled(self, unit: str = TIMER_UNIT) -> bool:
        return self._runner.run(["systemctl", "is-enabled", unit]).ok

    def active_state(self, unit: str = SERVICE_UNIT) -> str:
        res = self._runner.run(["systemctl", "show", unit, "--property=ActiveState", "--value"])
        state = res.stdout.strip() if res.ok else ""
        return state or "unknown"

    def next_run(self, unit: str = TIMER_UNIT) -> Optional[str]:
        """Next elapse time of the timer, or None when nothing is scheduled."""
        res = self._runner.run(["systemctl", "show", unit, "--property=NextElapseUSecRealtime", "--value"])
        if not res.ok:
            return None
        value = res.stdout.strip()
        if not value or value == "n/a":
            return None
        return value

    def unit_status(self, unit: str) -> str:
        res = self._runner.run(["systemctl", "status", unit, "--no-pager"])
        return res.stdout

    def journal(self, unit: str = SERVICE_UNIT, lines: int = 10) -> str:
        res = self._runner.run(["journalctl", "-u", unit, "--no-pager", "-n", str(lines)])
        return res.stdout

    # -------- State changes --------
    def _ctl(self, verb: str, unit: Optional[str] = None) -> bool:
        args = ["systemctl", verb] + ([unit] if unit else [])
        return self._runner.run(args, privileged=True).ok

    def enable(self, unit: str = TIMER_UNIT) -> bool:
        return self._ctl("enable", unit)

    def disable(self, unit: str = TIMER_UNIT) -> bool:
        return self._ctl("disable", unit)

    def start(self, unit: str = TIMER_UNIT) -> bool:
        return self._ctl("start", unit)

    def stop(self, unit: str = TIMER_UNIT) -> bool:
        return self._ctl("stop", unit)

    def restart(self, unit: str) -> bool:
        return self._ctl("restart", unit)

    def daemon_reload(self) -> bool:
        return self._ctl("daemon-reload")

    def reset_failed(self) -> bool:
        return self._ctl("reset-failed")

    # -------- Unit files --------
    def install_units(self, unit_dir: Path, hook: str) -> None:
        unit_dir = Path(unit_dir)
        unit_dir.mkdir(parents=True, exist_ok=True)
        (unit_dir / SERVICE_UNIT).write_text(render_service(hook), encoding="utf-8")
        (unit_dir / TIMER_UNIT).write_text(render_timer(), encoding="utf-8")

    def remove_units(self, unit_dir: Path) -> None:
        for name in (SERVICE_UNIT, TIMER_UNIT):
            (Path(unit_dir) / name).unlink(missing_ok=True)

    @staticmethod
    def units_installed(unit_dir: Path) -> bool:
        return (Path(unit_dir) / TIMER_UNIT).is_file() and (Path(unit_dir) / SERVICE_UNIT).is_file()


__all__ = [
    "Systemctl",
    "TIMER_UNIT",
    "SERVICE_UNIT",
    "render_service",
    "render_timer",
]
