from __future__ import annotations

import argparse
import logging
import sys
from typing import List, Optional

from common.config import Paths, TakConfig, load_config, split_config_arg
from common.crontab import RENEWAL_HOOK_PROGRAM, hook_command
from common.logs import setup_logger
from common.system import CommandRunner, SetupError, resolve_program
from common.systemd import SERVICE_UNIT, TIMER_UNIT, Systemctl


LOGGER_NAME = "tak_renewal.systemd"


def setup(
    config: TakConfig,
    *,
    config_file: Optional[str] = None,
    runner: CommandRunner,
    paths: Paths,
    log: logging.Logger,
) -> None:
    """Install, enable and start the renewal timer.

    Raises SetupError when LetsEncrypt is not configured, systemd is not
    available, or the timer cannot be enabled/started.
    """
    if not config.letsencrypt_ready:
        raise SetupError("LetsEncrypt not properly configured in config file")

    ctl = Systemctl(runner)
    if not ctl.available():
        raise SetupError("systemd not available on this system")

    hook = hook_command(resolve_program(runner, RENEWAL_HOOK_PROGRAM, paths.bin_dir), config_file)
    log.info("Setting up LetsEncrypt automatic renewal via systemd for domain: %s", config.tak_uri)
    log.info("Creating systemd units in %s", paths.systemd_unit_dir)
    try:
        ctl.install_units(paths.systemd_unit_dir, hook)
    except OSError as exc:
        raise SetupError(f"Cannot write systemd unit files: {exc}") from exc

    ctl.daemon_reload()

    if not ctl.enable(TIMER_UNIT):
        raise SetupError("Failed to enable LetsEncrypt renewal timer")
    log.info("LetsEncrypt renewal timer enabled")

    if not ctl.start(TIMER_UNIT):
        raise SetupError("Failed to start LetsEncrypt renewal timer")
    log.info("LetsEncrypt renewal timer started")

    log.info("Systemd timer configured to run weekly")
    log.info("Logs will be available via: journalctl -u %s", SERVICE_UNIT)
    log.info("To test the renewal process manually, run:")
    log.info("  sudo systemctl start %s", SERVICE_UNIT)


def deactivate(*, runner: CommandRunner) -> None:
    """Stop and disable the timer but keep its unit files (standby)."""
    ctl = Systemctl(runner)
    ctl.stop(TIMER_UNIT)
    ctl.disable(TIMER_UNIT)


def remove(*, runner: CommandRunner, paths: Paths, log: logging.Logger) -> None:
    log.info("Removing LetsEncrypt systemd timer and service")
    ctl = Systemctl(runner)
    if ctl.is_active(TIMER_UNIT):
        ctl.stop(TIMER_UNIT)
    if ctl.is_enabled(TIMER_UNIT):
        ctl.disable(TIMER_UNIT)
    try:
        ctl.remove_units(paths.systemd_unit_dir)
    except OSError as exc:
        raise SetupError(f"Cannot remove systemd unit files: {exc}") from exc
    ctl.daemon_reload()
    ctl.reset_failed()
    log.info("LetsEncrypt systemd components removed")


def status_report(config: TakConfig, *, runner: CommandRunner, paths: Paths) -> List[str]:
    lines: List[str] = ["LetsEncrypt Systemd Timer Status", "================================="]
    if not config.letsencrypt_ready:
        lines.append("LetsEncrypt: Not configured or disabled")
        return lines
    lines.append(f"Domain: {config.tak_uri}")
    lines.append("LetsEncrypt enabled: Yes")
    lines.append("")

    ctl = Systemctl(runner)
    if not Systemctl.units_installed(paths.systemd_unit_dir):
        lines.append("Systemd timer not configured")
        return lines

    lines.append("Timer status:")
    lines.append(ctl.unit_status(TIMER_UNIT).rstrip())
    lines.append("")
    lines.append("Service status:")
    lines.append(ctl.unit_status(SERVICE_UNIT).rstrip())
    lines.append("")
    lines.append("Next scheduled run:")
    lines.append(f"  {ctl.next_run(TIMER_UNIT) or 'n/a'}")
    lines.append("")
    lines.append("Recent logs:")
    lines.append(ctl.journal(SERVICE_UNIT, 10).rstrip())
    return lines


def run_once(
    command: str,
    *,
    config_file: Optional[str] = None,
    runner: Optional[CommandRunner] = None,
    paths: Optional[Paths] = None,
) -> int:
    runner = runner or CommandRunner()
    paths = paths or Paths.from_env()
    log = setup_logger(LOGGER_NAME)
    config = load_config(config_file)

    try:
        if command == "setup":
            setup(config, config_file=config_file or config.source, runner=runner, paths=paths, log=log)
            return 0
        if command == "remove":
            remove(runner=runner, paths=paths, log=log)
            return 0
    except SetupError as exc:
        log.error("%s", exc)
        return 1

    if command == "status":
        for line in status_report(config, runner=runner, paths=paths):
            print(line)
        return 0 if config.letsencrypt_ready else 1

    raise ValueError(f"Unknown command: {command}")


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        prog="tak-le-systemd",
        description="Manage the LetsEncrypt renewal systemd timer.",
        epilog="commands: setup, remove, status. The timer runs weekly with a random delay up to 1 hour.",
    )
    parser.add_argument("args", nargs="*", metavar="[config_file] command")
    ns = parser.parse_args(argv)
    config_file, rest = split_config_arg(ns.args)
    if not rest or rest[0] not in ("setup", "remove", "status"):
        parser.print_help()
        return 1
    return run_once(rest[0], config_file=config_file)


if __name__ == "__main__":
    sys.exit(main())
