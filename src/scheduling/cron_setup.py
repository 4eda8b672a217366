from __future__ import annotations

import argparse
import logging
import sys
from datetime import datetime
from typing import List, Optional

from common.certs import check_certificate
from common.config import Paths, TakConfig, load_config, split_config_arg
from common.crontab import (
    DEFAULT_SCHEDULE,
    RENEWAL_HOOK_PROGRAM,
    RENEWAL_JOB_PATTERN,
    Crontab,
    build_renewal_job,
    describe_schedule,
    hook_command,
    validate_schedule,
)
from common.logs import setup_logger, tail_lines
from common.system import CommandError, CommandRunner, SetupError, resolve_program


LOGGER_NAME = "tak_renewal.cron"


def _touch_logs(paths: Paths, log: logging.Logger) -> None:
    for p in (paths.renewal_log, paths.cron_log):
        try:
            p.parent.mkdir(parents=True, exist_ok=True)
            p.touch(exist_ok=True)
            p.chmod(0o644)
        except OSError as exc:
            log.warning("Cannot prepare log file %s: %s", p, exc)


def setup(
    config: TakConfig,
    *,
    config_file: Optional[str] = None,
    schedule: str = DEFAULT_SCHEDULE,
    runner: CommandRunner,
    paths: Paths,
    log: logging.Logger,
) -> bool:
    """Install the certbot renewal cron job.

    Returns True when a job was added, False when one already existed.
    Raises SetupError when LetsEncrypt is not configured, cron is missing,
    or the crontab cannot be written.
    """
    if not config.letsencrypt_ready:
        raise SetupError("LetsEncrypt not properly configured in config file")
    try:
        schedule = validate_schedule(schedule)
    except ValueError as exc:
        raise SetupError(str(exc)) from exc

    cron = Crontab(runner)
    if not cron.available():
        raise SetupError("crontab command not available")

    log.info("Setting up LetsEncrypt automatic renewal for domain: %s", config.tak_uri)
    hook = hook_command(resolve_program(runner, RENEWAL_HOOK_PROGRAM, paths.bin_dir), config_file)
    job = build_renewal_job(schedule, hook, paths.cron_log)
    log.info("Adding cron job: %s", job)

    added = False
    if cron.has_job(RENEWAL_JOB_PATTERN):
        log.warning("LetsEncrypt renewal cron job already exists, skipping")
    else:
        try:
            cron.add(job)
        except CommandError as exc:
            raise SetupError(f"Failed to install cron job: {exc}") from exc
        added = True
        log.info("LetsEncrypt auto-renewal cron job added successfully")

    _touch_logs(paths, log)

    log.info("Cron job will run: %s", describe_schedule(schedule))
    log.info("Logs will be written to:")
    log.info("  - Renewal activity: %s", paths.renewal_log)
    log.info("  - Cron execution: %s", paths.cron_log)
    log.info("To test the renewal process manually, run:")
    log.info("  sudo certbot renew --dry-run --deploy-hook '%s'", hook)
    return added


def remove(*, runner: CommandRunner, log: logging.Logger) -> int:
    """Remove every renewal cron job; returns the number removed."""
    log.info("Removing LetsEncrypt auto-renewal cron jobs")
    try:
        removed = Crontab(runner).remove_matching(RENEWAL_JOB_PATTERN)
    except CommandError as exc:
        raise SetupError(f"Failed to update crontab: {exc}") from exc
    log.info("LetsEncrypt auto-renewal cron jobs removed (%d)", removed)
    return removed


def status_report(
    config: TakConfig,
    *,
    runner: CommandRunner,
    paths: Paths,
    now: Optional[datetime] = None,
) -> List[str]:
    lines: List[str] = ["LetsEncrypt Auto-Renewal Status", "================================"]
    if not config.letsencrypt_ready:
        lines.append("LetsEncrypt: Not configured or disabled")
        return lines
    lines.append(f"Domain: {config.tak_uri}")
    lines.append("LetsEncrypt enabled: Yes")

    jobs = Crontab(runner).matching(RENEWAL_JOB_PATTERN)
    if jobs:
        lines.append(f"Cron jobs configured: {len(jobs)}")
        lines.append("")
        lines.append("Active cron jobs:")
        lines.extend(jobs)
    else:
        lines.append("Cron jobs configured: None")

    lines.append("")
    if paths.renewal_log.exists():
        lines.append("Last renewal activity:")
        recent = tail_lines(paths.renewal_log, 5)
        lines.extend(recent or ["  No recent activity"])
    else:
        lines.append("No renewal log found")

    lines.append("")
    live = paths.live_dir(config.tak_uri or "")
    if live.is_dir():
        lines.append("Certificate status:")
        cert = check_certificate(live / "cert.pem", "Certificate", now=now)
        if cert.status == "missing":
            lines.append("  Status: Certificate file not found")
        elif cert.status == "unreadable":
            lines.append("  Status: Unable to read certificate expiration")
        else:
            lines.append(f"  Expires: {cert.expiry_display}")
            lines.append(f"  Days remaining: {cert.days_remaining}")
            if cert.status == "expired":
                lines.append("  Status: EXPIRED - Certificate has expired!")
            elif cert.status == "warning":
                lines.append("  Status: WARNING - Certificate expires soon!")
            else:
                lines.append("  Status: OK")
    else:
        lines.append(f"Certificate directory not found: {live}")
    return lines


def run_once(
    command: str,
    *,
    config_file: Optional[str] = None,
    schedule: Optional[str] = None,
    runner: Optional[CommandRunner] = None,
    paths: Optional[Paths] = None,
) -> int:
    runner = runner or CommandRunner()
    paths = paths or Paths.from_env()
    log = setup_logger(LOGGER_NAME)
    config = load_config(config_file)

    try:
        if command == "setup":
            setup(
                config,
                config_file=config_file or config.source,
                schedule=schedule or DEFAULT_SCHEDULE,
                runner=runner,
                paths=paths,
                log=log,
            )
            return 0
        if command == "remove":
            remove(runner=runner, log=log)
            return 0
    except SetupError as exc:
        log.error("%s", exc)
        return 1

    if command == "status":
        for line in status_report(config, runner=runner, paths=paths):
            print(line)
        return 0 if config.letsencrypt_ready else 1

    raise ValueError(f"Unknown command: {command}")


def _parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="tak-le-cron",
        description="Manage the LetsEncrypt renewal cron job.",
        epilog=(
            "commands: setup [cron_schedule] (default: '0 2 * * 0' = Sunday 2:00 AM), "
            "remove, status"
        ),
    )
    p.add_argument("args", nargs="*", metavar="[config_file] command [schedule]")
    return p


def main(argv: Optional[List[str]] = None) -> int:
    parser = _parser()
    ns = parser.parse_args(argv)
    config_file, rest = split_config_arg(ns.args)
    if not rest or rest[0] not in ("setup", "remove", "status"):
        parser.print_help()
        return 1
    schedule = " ".join(rest[1:]) or None
    return run_once(rest[0], config_file=config_file, schedule=schedule)


if __name__ == "__main__":
    sys.exit(main())
