from __future__ import annotations

import argparse
import logging
import shutil
import sys
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

import httpx

from common.alerts import RenewalContext, format_renewal_subject, renewal_payload
from common.config import Paths, TakConfig, load_config, split_config_arg
from common.logs import setup_logger
from common.notify import Notifier
from common.system import CommandRunner, hostname
from common.systemd import Systemctl
from health import certcheck
from renewal.importer import CertificateImportError, import_certificates


LOGGER_NAME = "tak_renewal.renewal"
TAK_SERVICE = "takserver"
TAK_CONTAINER = "tak-server"


class RestartError(RuntimeError):
    """TAK Server could not be restarted after the certificate import."""


def backup_certificates(config: TakConfig, *, paths: Paths, now: datetime, log: logging.Logger) -> Optional[Path]:
    """Copy the current TAK certificate files aside; failures only warn."""
    log.info("Backing up existing certificates")
    src = config.tak_certs_files
    if src is None or not src.is_dir():
        return None
    dest = paths.backup_dir / f"certs-backup-{now.strftime('%Y%m%d-%H%M%S')}"
    try:
        paths.backup_dir.mkdir(parents=True, exist_ok=True)
        shutil.copytree(src, dest)
    except OSError as exc:
        log.warning("Certificate backup failed: %s", exc)
        return None
    log.info("Certificates backed up to %s", dest)
    return dest


def restart_tak(config: TakConfig, *, runner: CommandRunner, log: logging.Logger) -> None:
    log.info("Restarting TAK Server services")
    if config.installer == "docker":
        release = Path(config.release_path or "")
        if not (release / "docker-compose.yml").is_file():
            raise RestartError(f"Docker compose file not found at {release / 'docker-compose.yml'}")
        res = runner.run(["docker-compose", "restart", TAK_CONTAINER], cwd=release, privileged=True)
        for line in (res.stdout + res.stderr).splitlines():
            log.info("%s", line)
        if not res.ok:
            raise RestartError("Failed to restart Docker TAK Server")
        log.info("Docker TAK Server restarted successfully")
    elif config.installer == "ubuntu":
        if not Systemctl(runner).restart(TAK_SERVICE):
            raise RestartError("Failed to restart Ubuntu TAK Server")
        log.info("Ubuntu TAK Server restarted successfully")
    else:
        log.warning("Unknown installer type: %s. Manual service restart may be required.", config.installer)


def _notify(notifier: Notifier, status: str, message: str, now: datetime) -> Dict[str, bool]:
    ctx = RenewalContext(status=status, message=message, hostname=hostname(), at=now)  # type: ignore[arg-type]
    return notifier.notify(subject=format_renewal_subject(ctx), body=message, payload=renewal_payload(ctx))


def renew(
    config: TakConfig,
    *,
    runner: CommandRunner,
    paths: Paths,
    notifier: Notifier,
    log: logging.Logger,
    now: Optional[datetime] = None,
    http_client: Optional[httpx.Client] = None,
) -> Dict[str, Any]:
    """
    certbot deploy hook body: back up, import, restart, notify.

    Returns {"ok": bool, "stage": str}; `stage` names the step that failed
    (or "done").
    """
    now = now or datetime.now().astimezone()
    log.info("Starting LetsEncrypt certificate renewal process")

    if not config.letsencrypt_ready:
        log.error(
            "LetsEncrypt not properly configured. TAK_URI=%s, LETSENCRYPT=%s",
            config.tak_uri or "",
            "true" if config.letsencrypt else "false",
        )
        return {"ok": False, "stage": "config"}
    if not paths.live_dir(config.tak_uri or "").is_dir():
        log.error("LetsEncrypt certificates not found for domain %s", config.tak_uri)
        return {"ok": False, "stage": "config"}

    backup_certificates(config, paths=paths, now=now, log=log)

    log.info("Importing renewed LetsEncrypt certificates for domain %s", config.tak_uri)
    try:
        import_certificates(config, runner=runner, paths=paths, log=log, http_client=http_client)
    except CertificateImportError as exc:
        log.error("Failed to import LetsEncrypt certificates: %s", exc)
        _notify(notifier, "FAILED", f"LetsEncrypt certificate import failed for {config.tak_uri} on {hostname()}", now)
        return {"ok": False, "stage": "import"}

    try:
        restart_tak(config, runner=runner, log=log)
    except RestartError as exc:
        log.error("Failed to restart TAK Server services after certificate renewal: %s", exc)
        _notify(
            notifier,
            "FAILED",
            f"TAK Server restart failed after LetsEncrypt renewal for {config.tak_uri} on {hostname()}",
            now,
        )
        return {"ok": False, "stage": "restart"}

    log.info("LetsEncrypt certificate renewal completed: SUCCESS")
    _notify(notifier, "SUCCESS", f"LetsEncrypt certificates renewed successfully for {config.tak_uri} on {hostname()}", now)

    result = certcheck.collect(config, paths=paths)
    for line in certcheck.text_report(config, result, warn_days=certcheck.DEFAULT_WARN_DAYS):
        if line:
            log.info("%s", line)
    return {"ok": True, "stage": "done"}


def run_once(
    *,
    config_file: Optional[str] = None,
    runner: Optional[CommandRunner] = None,
    paths: Optional[Paths] = None,
    notifier: Optional[Notifier] = None,
    now: Optional[datetime] = None,
    http_client: Optional[httpx.Client] = None,
) -> int:
    runner = runner or CommandRunner()
    paths = paths or Paths.from_env()
    log = setup_logger(LOGGER_NAME, paths.renewal_log)
    config = load_config(config_file)
    notifier = notifier or Notifier(
        runner=runner,
        email=config.le_notification_email,
        webhook_url=config.le_webhook_url,
        logger=log,
        http_client=http_client,
    )
    result = renew(config, runner=runner, paths=paths, notifier=notifier, log=log, now=now, http_client=http_client)
    return 0 if result["ok"] else 1


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        prog="tak-letsencrypt-renewal",
        description="certbot deploy hook: import renewed certificates and restart TAK Server.",
    )
    parser.add_argument("args", nargs="*", metavar="[config_file]")
    ns = parser.parse_args(argv)
    config_file, rest = split_config_arg(ns.args)
    if rest:
        parser.print_help()
        return 1
    return run_once(config_file=config_file)


if __name__ == "__main__":
    sys.exit(main())
