from __future__ import annotations

import argparse
import logging
import sys
from dataclasses import dataclass
from typing import List, Optional

from common.config import Paths, TakConfig, load_config, split_config_arg
from common.crontab import (
    DEFAULT_SCHEDULE,
    FAILOVER_PROGRAM,
    FALLBACK_SCHEDULE,
    HEALTH_JOB_PATTERN,
    RENEWAL_JOB_PATTERN,
    Crontab,
    build_health_job,
    validate_schedule,
)
from common.logs import setup_logger, tail_lines
from common.system import CommandError, CommandRunner, SetupError, resolve_program
from common.systemd import TIMER_UNIT, Systemctl
from scheduling import cron_setup, systemd_setup
from state.marker_store import MarkerError, MarkerStore
from state.models import RenewalState, SchedulerKind


LOGGER_NAME = "tak_renewal.system"


@dataclass(frozen=True)
class Capabilities:
    cron: bool
    systemd: bool

    @classmethod
    def detect(cls, runner: CommandRunner) -> "Capabilities":
        return cls(cron=Crontab(runner).available(), systemd=Systemctl(runner).available())

    def supports(self, kind: SchedulerKind) -> bool:
        if kind is SchedulerKind.CRON:
            return self.cron
        if kind is SchedulerKind.SYSTEMD:
            return self.systemd
        return False


def choose_roles(caps: Capabilities, preferred: SchedulerKind) -> tuple[SchedulerKind, Optional[SchedulerKind]]:
    """Primary and (optional) fallback for the detected capabilities."""
    if caps.supports(preferred) and caps.supports(preferred.other):
        return preferred, preferred.other
    if caps.supports(preferred):
        return preferred, None
    if caps.supports(preferred.other):
        return preferred.other, None
    raise SetupError("Neither cron nor systemd available - cannot set up automatic renewal")


def _install(
    kind: SchedulerKind,
    config: TakConfig,
    *,
    config_file: Optional[str],
    schedule: str,
    runner: CommandRunner,
    paths: Paths,
    log: logging.Logger,
) -> None:
    if kind is SchedulerKind.CRON:
        cron_setup.setup(config, config_file=config_file, schedule=schedule, runner=runner, paths=paths, log=log)
    else:
        systemd_setup.setup(config, config_file=config_file, runner=runner, paths=paths, log=log)


def _stand_down(kind: SchedulerKind, *, runner: CommandRunner, log: logging.Logger) -> None:
    """Leave an installed fallback inactive until failover promotes it."""
    if kind is SchedulerKind.SYSTEMD:
        systemd_setup.deactivate(runner=runner)
        log.info("Systemd timer installed and held in standby")
    else:
        try:
            Crontab(runner).remove_matching(RENEWAL_JOB_PATTERN)
        except CommandError as exc:
            raise SetupError(f"Failed to update crontab: {exc}") from exc
        log.info("Cron fallback held in standby (job installed on failover)")


def install_monitor(*, config_file: Optional[str], runner: CommandRunner, paths: Paths, log: logging.Logger) -> str:
    """Install (or replace) the daily failover check cron job."""
    program = resolve_program(runner, FAILOVER_PROGRAM, paths.bin_dir)
    job = build_health_job(program, config_file, paths.system_log)
    try:
        Crontab(runner).replace(HEALTH_JOB_PATTERN, job)
    except CommandError as exc:
        raise SetupError(f"Failed to install health monitoring job: {exc}") from exc
    log.info("Health monitoring cron job installed: %s", job)
    return job


def setup(
    config: TakConfig,
    *,
    config_file: Optional[str] = None,
    preferred: SchedulerKind = SchedulerKind.CRON,
    primary_schedule: str = DEFAULT_SCHEDULE,
    fallback_schedule: str = FALLBACK_SCHEDULE,
    runner: CommandRunner,
    paths: Paths,
    store: MarkerStore,
    log: logging.Logger,
) -> SchedulerKind:
    """Install the primary scheduler, a standby fallback and the health monitor.

    Returns the kind that became primary.
    """
    if not config.letsencrypt_ready:
        raise SetupError("LetsEncrypt not properly configured in config file")
    try:
        primary_schedule = validate_schedule(primary_schedule)
        fallback_schedule = validate_schedule(fallback_schedule)
    except ValueError as exc:
        raise SetupError(str(exc)) from exc

    caps = Capabilities.detect(runner)
    log.info(
        "Detected capabilities: cron=%s systemd=%s",
        "yes" if caps.cron else "no",
        "yes" if caps.systemd else "no",
    )
    primary, fallback = choose_roles(caps, preferred)

    log.info("Setting up %s as primary renewal system", primary.value)
    _install(primary, config, config_file=config_file, schedule=primary_schedule, runner=runner, paths=paths, log=log)
    store.set_primary(primary)

    if fallback is SchedulerKind.SYSTEMD:
        log.info("Setting up systemd as fallback renewal system")
        systemd_setup.setup(config, config_file=config_file, runner=runner, paths=paths, log=log)
        _stand_down(fallback, runner=runner, log=log)
    elif fallback is SchedulerKind.CRON:
        log.info("Setting up cron as fallback renewal system (schedule: %s)", fallback_schedule)
        _stand_down(fallback, runner=runner, log=log)
    else:
        log.warning("Only %s available - no fallback renewal system", primary.value)
    store.set_fallback(fallback)

    # Failover to cron (or a later failback) installs the job on this schedule
    if primary is SchedulerKind.CRON:
        store.set_cron_schedule(primary_schedule)
    elif fallback is SchedulerKind.CRON:
        store.set_cron_schedule(fallback_schedule)
    else:
        store.set_cron_schedule(None)

    if caps.cron:
        install_monitor(config_file=config_file, runner=runner, paths=paths, log=log)
    else:
        log.warning("cron not available - health monitoring not installed")

    log.info("Renewal system setup complete (primary: %s)", primary.value)
    return primary


def remove(*, runner: CommandRunner, paths: Paths, store: MarkerStore, log: logging.Logger) -> None:
    log.info("Removing TAK renewal system")
    cron = Crontab(runner)
    if cron.available():
        cron_setup.remove(runner=runner, log=log)
        try:
            cron.remove_matching(HEALTH_JOB_PATTERN)
        except CommandError as exc:
            raise SetupError(f"Failed to remove health monitoring job: {exc}") from exc
        log.info("Health monitoring job removed")
    if Systemctl(runner).available():
        systemd_setup.remove(runner=runner, paths=paths, log=log)
    store.clear()
    log.info("TAK renewal system removed")


def status_report(config: TakConfig, *, runner: CommandRunner, paths: Paths, store: MarkerStore) -> List[str]:
    cron = Crontab(runner)
    ctl = Systemctl(runner)
    marker_problem = None
    try:
        state = store.read()
    except MarkerError as exc:
        marker_problem = str(exc)
        state = RenewalState(primary_recorded=True)

    lines = [
        "TAK Server Renewal System Status",
        "================================",
        f"Domain: {config.tak_uri or 'Not configured'}",
        f"LetsEncrypt: {'Enabled' if config.letsencrypt else 'Disabled'}",
        "",
        "Primary System:",
    ]
    if marker_problem:
        lines.append(f"  Warning: {marker_problem}")
    if state.primary is SchedulerKind.CRON:
        lines.append("  Type: cron")
        lines.append(f"  Status: {'Active' if cron.has_job(RENEWAL_JOB_PATTERN) else 'Inactive'}")
    elif state.primary is SchedulerKind.SYSTEMD:
        lines.append("  Type: systemd")
        lines.append(f"  Status: {'Active' if ctl.is_active(TIMER_UNIT) else 'Inactive'}")
    elif state.primary_recorded:
        lines.append("  Type: unknown")
    else:
        lines.append("  Not configured")

    lines.append("")
    lines.append("Fallback System:")
    if state.fallback_recorded:
        lines.append("  Configured: Yes")
        if state.fallback is not None:
            lines.append(f"  Type: {state.fallback.value}")
        lines.append("  Status: Standby")
    else:
        lines.append("  Configured: No")

    lines.append("")
    lines.append("Health Monitoring:")
    if cron.has_job(HEALTH_JOB_PATTERN):
        lines.append("  Enabled: Yes")
        lines.append("  Frequency: Daily")
    else:
        lines.append("  Enabled: No")

    lines.append("")
    lines.append("Recent Logs:")
    recent = tail_lines(paths.system_log, 5)
    lines.extend(recent or ["  No log file found"])
    return lines


def run_once(
    command: str,
    *,
    config_file: Optional[str] = None,
    preferred: SchedulerKind = SchedulerKind.CRON,
    primary_schedule: Optional[str] = None,
    fallback_schedule: Optional[str] = None,
    runner: Optional[CommandRunner] = None,
    paths: Optional[Paths] = None,
    store: Optional[MarkerStore] = None,
) -> int:
    runner = runner or CommandRunner()
    paths = paths or Paths.from_env()
    store = store or MarkerStore(paths.state_dir)
    log = setup_logger(LOGGER_NAME, paths.system_log)
    config = load_config(config_file)

    try:
        if command == "setup":
            setup(
                config,
                config_file=config_file or config.source,
                preferred=preferred,
                primary_schedule=primary_schedule or DEFAULT_SCHEDULE,
                fallback_schedule=fallback_schedule or FALLBACK_SCHEDULE,
                runner=runner,
                paths=paths,
                store=store,
                log=log,
            )
            return 0
        if command == "remove":
            remove(runner=runner, paths=paths, store=store, log=log)
            return 0
    except SetupError as exc:
        log.error("%s", exc)
        return 1

    if command == "status":
        for line in status_report(config, runner=runner, paths=paths, store=store):
            print(line)
        return 0

    raise ValueError(f"Unknown command: {command}")


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        prog="tak-renewal-system",
        description="Set up LetsEncrypt renewal with a primary scheduler, a standby fallback and failover monitoring.",
        epilog=(
            "commands: setup [primary_schedule] [fallback_schedule], remove, status. "
            "Schedules are quoted 5-field cron expressions (defaults: '0 2 * * 0' and '0 3 * * 0')."
        ),
    )
    parser.add_argument("args", nargs="*", metavar="[config_file] command [schedules]")
    parser.add_argument(
        "--primary",
        choices=[SchedulerKind.CRON.value, SchedulerKind.SYSTEMD.value],
        default=SchedulerKind.CRON.value,
        help="Preferred primary scheduler when both are available (default: cron)",
    )
    ns = parser.parse_args(argv)
    config_file, rest = split_config_arg(ns.args)
    if not rest or rest[0] not in ("setup", "remove", "status"):
        parser.print_help()
        return 1
    schedules = rest[1:]
    if len(schedules) > 2:
        parser.print_help()
        return 1
    return run_once(
        rest[0],
        config_file=config_file,
        preferred=SchedulerKind(ns.primary),
        primary_schedule=schedules[0] if schedules else None,
        fallback_schedule=schedules[1] if len(schedules) > 1 else None,
    )


if __name__ == "__main__":
    sys.exit(main())
