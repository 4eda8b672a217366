from __future__ import annotations

import argparse
import json
import logging
import os
import re
import sys
from datetime import datetime
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, Field

from common.certs import check_certificate
from common.config import Paths, TakConfig, load_config, split_config_arg
from common.crontab import RENEWAL_HOOK_PROGRAM, RENEWAL_JOB_PATTERN, Crontab
from common.logs import setup_logger
from common.system import CommandRunner, hostname, resolve_program
from common.systemd import SERVICE_UNIT, TIMER_UNIT, Systemctl


LOGGER_NAME = "tak_renewal.health"

EXIT_HEALTHY = 0
EXIT_WARNING = 1
EXIT_CRITICAL = 2
EXIT_ERROR = 3

MAX_COMPONENT_SCORE = 100
COMPONENT_COUNT = 4
# Renewal activity older than this is considered stale
RECENT_DAYS = 8

Status = Literal["HEALTHY", "WARNING", "CRITICAL", "UNAVAILABLE", "DISABLED", "UNKNOWN"]

_SEVERITY = {"HEALTHY": 0, "WARNING": 1, "CRITICAL": 2}
_DATE_RE = re.compile(r"(\d{4}-\d{2}-\d{2})")


def status_from_score(score: int) -> Status:
    if score >= 75:
        return "HEALTHY"
    if score >= 50:
        return "WARNING"
    return "CRITICAL"


class ComponentHealth(BaseModel):
    """Score (0-100) and status of one part of the renewal system."""

    status: Status = "UNKNOWN"
    score: int = 0
    details: List[str] = Field(default_factory=list)
    forced: Optional[Status] = Field(default=None, exclude=True)

    def add(self, points: int, detail: str) -> None:
        self.score += points
        self.details.append(detail)

    def force(self, status: Status) -> None:
        """Pin the status regardless of score; the most severe forced status wins."""
        if self.forced is None or _SEVERITY.get(status, 0) > _SEVERITY.get(self.forced, 0):
            self.forced = status

    def finalize(self) -> "ComponentHealth":
        self.status = self.forced or status_from_score(self.score)
        return self


class OverallHealth(BaseModel):
    status: Status
    health_percentage: int
    score: str


class HealthReport(BaseModel):
    timestamp: datetime
    hostname: str
    overall: OverallHealth
    components: Dict[str, ComponentHealth]

    @property
    def exit_code(self) -> int:
        return {"HEALTHY": EXIT_HEALTHY, "WARNING": EXIT_WARNING}.get(self.overall.status, EXIT_CRITICAL)


def _days_since_mtime(path, now: datetime) -> Optional[int]:
    try:
        mtime = path.stat().st_mtime
    except OSError:
        return None
    return int((now.timestamp() - mtime) // 86400)


# -------------------- Components --------------------

def check_cron(*, runner: CommandRunner, paths: Paths, now: datetime) -> ComponentHealth:
    c = ComponentHealth()
    cron = Crontab(runner)

    if cron.service_running():
        c.add(25, "Service: Running")
    else:
        c.details.append("Service: NOT RUNNING")
        c.force("CRITICAL")

    if cron.has_job(RENEWAL_JOB_PATTERN):
        c.add(25, "Job: Configured")
    else:
        c.details.append("Job: MISSING")
        c.force("CRITICAL")

    days = _days_since_mtime(paths.cron_log, now)
    if days is None:
        c.details.append("Last run: UNKNOWN")
    elif days < RECENT_DAYS:
        c.add(25, f"Last run: {days} days ago")
    else:
        c.details.append(f"Last run: {days} days ago (STALE)")
        c.force("WARNING")

    hook = resolve_program(runner, RENEWAL_HOOK_PROGRAM, paths.bin_dir)
    if os.path.isfile(hook) and os.access(hook, os.X_OK):
        c.add(25, "Hook: OK")
    else:
        c.details.append("Hook: MISSING")
        c.force("CRITICAL")
    return c.finalize()


def check_systemd(*, runner: CommandRunner) -> ComponentHealth:
    ctl = Systemctl(runner)
    if not ctl.available():
        return ComponentHealth(status="UNAVAILABLE", score=0, details=["Systemd: Not available"])

    c = ComponentHealth()
    if ctl.is_active(TIMER_UNIT):
        c.add(25, "Timer: Active")
    else:
        c.details.append("Timer: INACTIVE")
    if ctl.is_enabled(TIMER_UNIT):
        c.add(25, "Timer: Enabled")
    else:
        c.details.append("Timer: DISABLED")
    service_state = ctl.active_state(SERVICE_UNIT)
    if service_state != "failed":
        c.add(25, f"Service: {service_state}")
    else:
        c.details.append("Service: FAILED")
    next_run = ctl.next_run(TIMER_UNIT)
    if next_run:
        c.add(25, f"Next run: {next_run}")
    else:
        c.details.append("Next run: NOT SCHEDULED")
    return c.finalize()


def check_certificates(config: TakConfig, *, paths: Paths, now: datetime) -> ComponentHealth:
    if not config.letsencrypt_ready:
        return ComponentHealth(status="DISABLED", score=0, details=["LetsEncrypt: Not configured"])

    c = ComponentHealth()
    live = paths.live_dir(config.tak_uri or "")
    if not live.is_dir():
        c.details.append("Directory: MISSING")
        c.force("CRITICAL")
        return c.finalize()
    c.add(25, "Directory: OK")

    cert = check_certificate(live / "cert.pem", "Certificate", now=now)
    if cert.status == "missing":
        c.details.append("File: MISSING")
    elif cert.status == "unreadable":
        c.details.append("Expires: UNREADABLE")
    else:
        days = cert.days_remaining or 0
        if days > 30:
            c.add(50, f"Expires: {days} days")
        elif days > 14:
            c.add(25, f"Expires: {days} days")
            c.force("WARNING")
        elif days > 0:
            c.details.append(f"Expires: {days} days")
            c.force("CRITICAL")
        else:
            c.details.append(f"Expires: {days} days (EXPIRED)")
            c.force("CRITICAL")

    files = config.tak_certs_files
    if files is not None and (files / "letsencrypt.pem").is_file():
        c.add(25, "TAK integration: OK")
    else:
        c.details.append("TAK integration: MISSING")
    return c.finalize()


def check_logs(*, paths: Paths, now: datetime) -> ComponentHealth:
    c = ComponentHealth()
    log_path = paths.renewal_log
    try:
        lines = log_path.read_text(encoding="utf-8", errors="replace").splitlines()
    except OSError:
        c.details.append("Log: MISSING")
        return c.finalize()
    c.add(25, "Log: Present")

    last = lines[-1] if lines else ""
    m = _DATE_RE.search(last)
    if m:
        try:
            age = (now.date() - datetime.strptime(m.group(1), "%Y-%m-%d").date()).days
        except ValueError:
            age = None
        if age is not None and age < RECENT_DAYS:
            c.add(25, f"Last activity: {age} days ago")
        elif age is not None:
            c.details.append(f"Last activity: {age} days ago (STALE)")

    errors = sum(1 for ln in lines if "ERROR" in ln)
    successes = sum(1 for ln in lines if "SUCCESS" in ln)
    if errors == 0 and successes > 0:
        c.add(50, f"Renewals: {successes} successful")
    elif errors > 0 and successes > errors:
        c.add(25, f"Renewals: {successes} successful, {errors} errors")
        c.force("WARNING")
    elif errors > 0:
        c.details.append(f"Renewals: {errors} errors, {successes} successful")
        c.force("CRITICAL")
    else:
        c.details.append("Renewals: none recorded")
    return c.finalize()


# -------------------- Aggregation --------------------

def aggregate(components: Dict[str, ComponentHealth], *, now: datetime) -> HealthReport:
    total = sum(c.score for c in components.values())
    max_total = MAX_COMPONENT_SCORE * COMPONENT_COUNT
    pct = total * 100 // max_total
    if pct < 60:
        status: Status = "CRITICAL"
    elif pct < 80:
        status = "WARNING"
    else:
        status = "HEALTHY"
    certs = components.get("certificates")
    if certs is not None and certs.status == "CRITICAL":
        status = "CRITICAL"
    return HealthReport(
        timestamp=now,
        hostname=hostname(),
        overall=OverallHealth(status=status, health_percentage=pct, score=f"{total}/{max_total}"),
        components=components,
    )


def build_report(
    config: TakConfig,
    *,
    runner: CommandRunner,
    paths: Paths,
    now: Optional[datetime] = None,
) -> HealthReport:
    now = now or datetime.now().astimezone()
    components = {
        "cron": check_cron(runner=runner, paths=paths, now=now),
        "systemd": check_systemd(runner=runner),
        "certificates": check_certificates(config, paths=paths, now=now),
        "logs": check_logs(paths=paths, now=now),
    }
    return aggregate(components, now=now)


def recommendations(report: HealthReport, *, paths: Paths) -> List[str]:
    if report.overall.status == "HEALTHY":
        return []
    comps = report.components
    out: List[str] = []
    if comps["certificates"].status == "CRITICAL":
        out.append("Certificate issues detected - run certificate renewal immediately")
    if comps["cron"].status == "CRITICAL":
        out.append("Cron system issues - check cron service and job configuration")
    if comps["cron"].status == "CRITICAL" and comps["systemd"].status in ("CRITICAL", "UNAVAILABLE"):
        out.append("Both renewal systems failing - manual intervention required")
    if comps["logs"].status == "CRITICAL":
        out.append(f"Check renewal logs for errors: tail -f {paths.renewal_log}")
    return out


def text_report(report: HealthReport, *, paths: Paths) -> List[str]:
    lines = [
        "TAK Server Renewal System Health Check",
        "======================================",
        f"Timestamp: {report.timestamp.isoformat(timespec='seconds')}",
        f"Hostname: {report.hostname}",
        "",
        f"Overall Status: {report.overall.status} "
        f"({report.overall.health_percentage}% - {report.overall.score})",
        "",
        "Component Status:",
    ]
    labels = {"cron": "Cron", "systemd": "Systemd", "certificates": "Certificates", "logs": "Logs"}
    for key, comp in report.components.items():
        lines.append(
            "  %-12s: %-8s (%2d/100) - %s" % (labels.get(key, key), comp.status, comp.score, ", ".join(comp.details))
        )
    recs = recommendations(report, paths=paths)
    if recs:
        lines.append("")
        lines.append("Recommendations:")
        lines.extend(f"- {r}" for r in recs)
    return lines


def run_once(
    *,
    config_file: Optional[str] = None,
    as_json: bool = False,
    runner: Optional[CommandRunner] = None,
    paths: Optional[Paths] = None,
    now: Optional[datetime] = None,
) -> int:
    runner = runner or CommandRunner()
    paths = paths or Paths.from_env()
    log = setup_logger(LOGGER_NAME, paths.health_log, echo=not as_json)
    config = load_config(config_file)

    report = build_report(config, runner=runner, paths=paths, now=now)
    log.info(
        "Health check completed: %s (%d%%, %s)",
        report.overall.status,
        report.overall.health_percentage,
        report.overall.score,
    )
    if as_json:
        print(json.dumps(report.model_dump(mode="json"), indent=2))
    else:
        for line in text_report(report, paths=paths):
            print(line)
    return report.exit_code


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        prog="tak-renewal-health",
        description="Score the health of the LetsEncrypt renewal system.",
        epilog="exit codes: 0 healthy, 1 warning, 2 critical, 3 error",
    )
    parser.add_argument("args", nargs="*", metavar="[config_file]")
    parser.add_argument("-j", "--json", action="store_true", help="Output in JSON format")
    try:
        ns = parser.parse_args(argv)
    except SystemExit as exc:
        return EXIT_HEALTHY if exc.code == 0 else EXIT_ERROR
    config_file, rest = split_config_arg(ns.args)
    if rest:
        parser.print_usage(sys.stderr)
        return EXIT_ERROR
    try:
        return run_once(config_file=config_file, as_json=ns.json)
    except Exception as exc:
        logging.getLogger(LOGGER_NAME).error("Health check failed: %s", exc)
        return EXIT_ERROR


if __name__ == "__main__":
    sys.exit(main())
