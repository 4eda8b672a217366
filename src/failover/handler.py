from __future__ import annotations

import argparse
import logging
import sys
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from common.alerts import FailoverContext, failover_payload, format_failover_message, format_failover_subject
from common.config import Paths, TakConfig, load_config, split_config_arg
from common.crontab import (
    DEFAULT_SCHEDULE,
    RENEWAL_HOOK_PROGRAM,
    RENEWAL_JOB_PATTERN,
    Crontab,
    build_renewal_job,
    hook_command,
    validate_schedule,
)
from common.logs import setup_logger, tail_lines
from common.notify import Notifier
from common.system import CommandError, CommandRunner, SetupError, hostname, resolve_program
from common.systemd import SERVICE_UNIT, TIMER_UNIT, Systemctl
from scheduling import cron_setup, systemd_setup
from state.marker_store import MarkerError, MarkerStore
from state.models import FailoverEvent, RenewalState, SchedulerKind


LOGGER_NAME = "tak_renewal.failover"

# Failover when a primary accumulates more issues than this
FAILOVER_ISSUE_THRESHOLD = 2
# cron log untouched for longer than this counts as a missed run
STALE_CRON_DAYS = 14
# Reported for systemd when systemctl itself is missing: always above threshold
SYSTEMD_UNAVAILABLE_ISSUES = 10


class FailoverError(RuntimeError):
    """Activating the fallback scheduler failed."""


@dataclass
class HealthFindings:
    """Problems found on one scheduler backend; `issues` drives the failover decision."""

    kind: SchedulerKind
    problems: List[str] = field(default_factory=list)
    unavailable: bool = False

    @property
    def issues(self) -> int:
        if self.unavailable:
            return SYSTEMD_UNAVAILABLE_ISSUES
        return len(self.problems)

    @property
    def healthy(self) -> bool:
        return self.issues == 0


# -------------------- Detection --------------------

def detect_active(cron: Crontab, ctl: Systemctl) -> SchedulerKind:
    """Inspect the live system for the scheduler currently running renewals.

    cron wins when its renewal job is installed and the cron service runs;
    otherwise systemd when the timer is both active and enabled.
    """
    if cron.has_job(RENEWAL_JOB_PATTERN) and cron.service_running():
        return SchedulerKind.CRON
    if ctl.is_active(TIMER_UNIT) and ctl.is_enabled(TIMER_UNIT):
        return SchedulerKind.SYSTEMD
    return SchedulerKind.NONE


def detect_primary(state: RenewalState, cron: Crontab, ctl: Systemctl) -> SchedulerKind:
    """The recorded primary if the marker names one, else whatever is live."""
    if state.primary is not None:
        return state.primary
    return detect_active(cron, ctl)


def is_live(kind: SchedulerKind, cron: Crontab, ctl: Systemctl) -> bool:
    """Whether `kind` is actually scheduling renewals right now."""
    if kind is SchedulerKind.CRON:
        return cron.has_job(RENEWAL_JOB_PATTERN) and cron.service_running()
    if kind is SchedulerKind.SYSTEMD:
        return ctl.is_active(TIMER_UNIT) and ctl.is_enabled(TIMER_UNIT)
    return False


def read_state(store: MarkerStore, log: logging.Logger) -> RenewalState:
    """Marker state, or an empty state when a marker is unreadable."""
    try:
        return store.read()
    except MarkerError as exc:
        log.warning("%s; ignoring recorded roles and detecting the live system", exc)
        return RenewalState.empty()


# -------------------- Health --------------------

def _days_since_modified(path: Path, now: datetime) -> Optional[int]:
    try:
        mtime = path.stat().st_mtime
    except OSError:
        return None
    return int((now.timestamp() - mtime) // 86400)


def check_cron_health(cron: Crontab, cron_log: Path, now: datetime) -> HealthFindings:
    findings = HealthFindings(kind=SchedulerKind.CRON)
    if not cron.service_running():
        findings.problems.append("Cron service is not running")
    if not cron.has_job(RENEWAL_JOB_PATTERN):
        findings.problems.append("LetsEncrypt cron job not found")
    days = _days_since_modified(cron_log, now)
    if days is not None and days > STALE_CRON_DAYS:
        findings.problems.append(f"Cron last executed {days} days ago (may be stale)")
    return findings


def check_systemd_health(ctl: Systemctl) -> HealthFindings:
    findings = HealthFindings(kind=SchedulerKind.SYSTEMD)
    if not ctl.available():
        findings.unavailable = True
        findings.problems.append("Systemd not available")
        return findings
    if not ctl.is_active(TIMER_UNIT):
        findings.problems.append("Systemd timer is not active")
    if not ctl.is_enabled(TIMER_UNIT):
        findings.problems.append("Systemd timer is not enabled")
    if ctl.active_state(SERVICE_UNIT) == "failed":
        findings.problems.append("Systemd service is in failed state")
    return findings


def check_health(kind: SchedulerKind, *, cron: Crontab, ctl: Systemctl, paths: Paths, now: datetime) -> HealthFindings:
    if kind is SchedulerKind.CRON:
        return check_cron_health(cron, paths.cron_log, now)
    if kind is SchedulerKind.SYSTEMD:
        return check_systemd_health(ctl)
    raise ValueError(f"No health check for scheduler: {kind.value}")


def requires_failover(findings: HealthFindings, *, force: bool = False, live: bool = True) -> bool:
    """Fail over when forced, when the primary is not scheduling renewals, or above the issue threshold."""
    return force or not live or findings.issues > FAILOVER_ISSUE_THRESHOLD


# -------------------- Activation --------------------

def recorded_cron_schedule(store: MarkerStore, log: logging.Logger) -> str:
    """Schedule chosen at setup for cron renewals, else the default."""
    recorded = store.cron_schedule()
    if recorded is None:
        return DEFAULT_SCHEDULE
    try:
        return validate_schedule(recorded)
    except ValueError as exc:
        log.warning("%s; using default schedule %s", exc, DEFAULT_SCHEDULE)
        return DEFAULT_SCHEDULE


def activate_fallback(
    current: SchedulerKind,
    *,
    config_file: Optional[str],
    runner: CommandRunner,
    paths: Paths,
    store: MarkerStore,
    log: logging.Logger,
) -> SchedulerKind:
    """Make the other scheduler primary and put `current` on standby.

    The new scheduler is brought up before the old one is taken down, so a
    failed activation leaves the previous setup untouched.
    Raises FailoverError when the fallback cannot be activated.
    """
    cron = Crontab(runner)
    ctl = Systemctl(runner)
    hook = hook_command(resolve_program(runner, RENEWAL_HOOK_PROGRAM, paths.bin_dir), config_file)

    log.warning("Primary system (%s) failed, activating fallback", current.value)

    if current is SchedulerKind.CRON:
        log.info("Switching from cron to systemd")
        if not ctl.available():
            raise FailoverError("Cannot switch to systemd - not available")
        if not Systemctl.units_installed(paths.systemd_unit_dir):
            try:
                ctl.install_units(paths.systemd_unit_dir, hook)
            except OSError as exc:
                raise FailoverError(f"Cannot write systemd unit files: {exc}") from exc
            ctl.daemon_reload()
        if not ctl.enable(TIMER_UNIT) or not ctl.start(TIMER_UNIT):
            raise FailoverError("Failed to enable/start the systemd renewal timer")
        try:
            cron.remove_matching(RENEWAL_JOB_PATTERN)
        except CommandError as exc:
            log.warning("Could not remove old cron job: %s", exc)
        target = SchedulerKind.SYSTEMD
        log.info("Systemd timer activated as primary")

    elif current is SchedulerKind.SYSTEMD:
        log.info("Switching from systemd to cron")
        if not cron.available():
            raise FailoverError("Cannot switch to cron - not available")
        if not cron.has_job(RENEWAL_JOB_PATTERN):
            try:
                cron.add(build_renewal_job(recorded_cron_schedule(store, log), hook, paths.cron_log))
            except CommandError as exc:
                raise FailoverError(f"Failed to install cron job: {exc}") from exc
        ctl.stop(TIMER_UNIT)
        ctl.disable(TIMER_UNIT)
        target = SchedulerKind.CRON
        log.info("Cron job activated as primary")

    else:
        raise FailoverError(f"Unknown primary system: {current.value}")

    store.set_primary(target)
    store.set_fallback(current)
    store.mark_failed(current)
    return target


def _emergency_activate(
    config: TakConfig,
    *,
    config_file: Optional[str],
    runner: CommandRunner,
    paths: Paths,
    store: MarkerStore,
    log: logging.Logger,
) -> Optional[SchedulerKind]:
    ctl = Systemctl(runner)
    cron = Crontab(runner)
    candidates = []
    if ctl.available():
        candidates.append(SchedulerKind.SYSTEMD)
    if cron.available():
        candidates.append(SchedulerKind.CRON)
    if not candidates:
        log.critical("No renewal systems available - manual intervention required")
        return None

    for kind in candidates:
        log.info("Attempting to activate %s as emergency primary", kind.value)
        try:
            if kind is SchedulerKind.SYSTEMD:
                systemd_setup.setup(config, config_file=config_file, runner=runner, paths=paths, log=log)
            else:
                cron_setup.setup(
                    config,
                    config_file=config_file,
                    schedule=recorded_cron_schedule(store, log),
                    runner=runner,
                    paths=paths,
                    log=log,
                )
        except SetupError as exc:
            log.error("Emergency activation of %s failed: %s", kind.value, exc)
            continue
        store.set_primary(kind)
        return kind

    log.critical("No renewal system could be activated - manual intervention required")
    return None


def _notify_failover(
    config: TakConfig,
    notifier: Notifier,
    *,
    old: SchedulerKind,
    new: SchedulerKind,
    at: datetime,
    paths: Paths,
    log: logging.Logger,
) -> None:
    if not notifier.configured:
        return
    ctx = FailoverContext(
        old_system=old.value,
        new_system=new.value,
        hostname=hostname(),
        domain=config.tak_uri,
        at=at,
        log_path=str(paths.failover_log),
    )
    notifier.notify(
        subject=format_failover_subject(ctx),
        body=format_failover_message(ctx),
        payload=failover_payload(ctx),
    )
    log.info("Failover notifications sent")


# -------------------- Entry points --------------------

def perform_check(
    config: TakConfig,
    *,
    config_file: Optional[str] = None,
    force: bool = False,
    runner: CommandRunner,
    paths: Paths,
    store: MarkerStore,
    notifier: Notifier,
    log: logging.Logger,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """
    One monitoring pass: detect the primary, score it, fail over if needed.

    Returns a summary dict; `ok` is False when no primary could be found or
    the failover itself failed (both need an operator).
    """
    now = now or datetime.now().astimezone()
    cron = Crontab(runner)
    ctl = Systemctl(runner)

    log.info("Starting failover monitoring check")
    current = detect_primary(read_state(store, log), cron, ctl)

    if current is SchedulerKind.NONE:
        log.error("No active renewal system detected")
        emergency = _emergency_activate(
            config, config_file=config_file, runner=runner, paths=paths, store=store, log=log
        )
        return {
            "ok": False,
            "primary": SchedulerKind.NONE.value,
            "issues": None,
            "failover": False,
            "emergency": emergency.value if emergency else None,
        }

    log.info("Current primary system: %s", current.value)
    findings = check_health(current, cron=cron, ctl=ctl, paths=paths, now=now)
    for problem in findings.problems:
        log.error("%s", problem)
    live = is_live(current, cron, ctl)
    if not live:
        log.error("Primary system %s is not scheduling renewals", current.value)

    if not requires_failover(findings, force=force, live=live):
        log.info("Primary system health check passed (issues: %d)", findings.issues)
        return {
            "ok": True,
            "primary": current.value,
            "issues": findings.issues,
            "failover": False,
            "new_primary": current.value,
        }

    log.warning("Primary system health check failed (issues: %d), initiating failover", findings.issues)
    try:
        target = activate_fallback(
            current, config_file=config_file, runner=runner, paths=paths, store=store, log=log
        )
    except FailoverError as exc:
        log.critical("Failover failed - manual intervention required: %s", exc)
        return {
            "ok": False,
            "primary": current.value,
            "issues": findings.issues,
            "failover": False,
            "error": str(exc),
        }

    if not is_live(target, cron, ctl):
        log.warning("Activated %s but it is not reported as running", target.value)
    store.append_history(FailoverEvent(timestamp=now, old=current.value, new=target.value))
    log.info("Failover successful: %s -> %s", current.value, target.value)
    _notify_failover(config, notifier, old=current, new=target, at=now, paths=paths, log=log)

    return {
        "ok": True,
        "primary": current.value,
        "issues": findings.issues,
        "failover": True,
        "new_primary": target.value,
    }


def status_report(
    config: TakConfig,
    *,
    runner: CommandRunner,
    paths: Paths,
    store: MarkerStore,
    now: Optional[datetime] = None,
) -> List[str]:
    now = now or datetime.now().astimezone()
    cron = Crontab(runner)
    ctl = Systemctl(runner)
    state = read_state(store, logging.getLogger(LOGGER_NAME))

    def verdict(f: HealthFindings) -> str:
        return "HEALTHY" if f.healthy else "UNHEALTHY"

    lines = [
        "TAK Server Renewal Failover Status",
        "==================================",
        f"Domain: {config.tak_uri or 'Not configured'}",
        f"Current primary: {detect_primary(state, cron, ctl).value}",
        f"Fallback: {state.fallback.value if state.fallback else 'none recorded'}",
        "",
        "System Health:",
        "  Cron:",
        f"    Status: {verdict(check_cron_health(cron, paths.cron_log, now))}",
        "  Systemd:",
        f"    Status: {verdict(check_systemd_health(ctl))}",
        "",
        "Failover History:",
    ]
    events = store.history(limit=5)
    if events:
        lines.extend(f"  {e.to_line()}" for e in events)
    else:
        lines.append("  No failover events recorded")

    lines.append("")
    lines.append("Recent Logs:")
    recent = tail_lines(paths.failover_log, 5)
    lines.extend(recent or ["  No log file found"])
    return lines


def run_once(
    command: str = "check",
    *,
    config_file: Optional[str] = None,
    force: bool = False,
    runner: Optional[CommandRunner] = None,
    paths: Optional[Paths] = None,
    store: Optional[MarkerStore] = None,
    notifier: Optional[Notifier] = None,
    now: Optional[datetime] = None,
) -> int:
    runner = runner or CommandRunner()
    paths = paths or Paths.from_env()
    store = store or MarkerStore(paths.state_dir)
    config = load_config(config_file)
    log = setup_logger(LOGGER_NAME, paths.failover_log)

    if command == "status":
        for line in status_report(config, runner=runner, paths=paths, store=store, now=now):
            print(line)
        return 0

    if command == "force-failover":
        force = True
    elif command != "check":
        raise ValueError(f"Unknown command: {command}")

    notifier = notifier or Notifier(
        runner=runner,
        email=config.le_notification_email,
        webhook_url=config.le_webhook_url,
        logger=log,
    )
    result = perform_check(
        config,
        config_file=config_file or config.source,
        force=force,
        runner=runner,
        paths=paths,
        store=store,
        notifier=notifier,
        log=log,
        now=now,
    )
    return 0 if result["ok"] else 1


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        prog="tak-renewal-failover",
        description="Monitor the primary renewal scheduler and fail over to the fallback.",
        epilog="commands: check (default), status, force-failover",
    )
    parser.add_argument("args", nargs="*", metavar="[config_file] [command]")
    parser.add_argument("--force", action="store_true", help="Force failover regardless of health status")
    ns = parser.parse_args(argv)
    config_file, rest = split_config_arg(ns.args)
    if len(rest) > 1 or (rest and rest[0] not in ("check", "status", "force-failover")):
        parser.print_help()
        return 1
    command = rest[0] if rest else "check"
    return run_once(command, config_file=config_file, force=ns.force)


if __name__ == "__main__":
    sys.exit(main())
