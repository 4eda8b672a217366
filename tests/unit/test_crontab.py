from __future__ import annotations

from pathlib import Path

import pytest

from common.crontab import (
    HEALTH_JOB_PATTERN,
    RENEWAL_JOB_PATTERN,
    Crontab,
    build_health_job,
    build_renewal_job,
    describe_schedule,
    hook_command,
    validate_schedule,
)
from common.system import CommandError, CommandResult


def test_validate_schedule_normalizes_whitespace():
    assert validate_schedule("0  2 * *   0") == "0 2 * * 0"


@pytest.mark.parametrize("expr", ["", "0 2 * *", "0 2 * * 0 extra"])
def test_validate_schedule_rejects_wrong_field_count(expr):
    with pytest.raises(ValueError):
        validate_schedule(expr)


def test_describe_schedule():
    assert describe_schedule("0 2 * * 0") == "Every Sunday at 2:00"
    assert describe_schedule("30 4 * * *") == "Every day at 4:30"
    assert describe_schedule("0 */6 * * *").startswith("Custom schedule:")


def test_renewal_job_line_is_matched_by_pattern():
    hook = hook_command("/usr/local/bin/tak-letsencrypt-renewal", "/opt/tak/config.inc.sh")
    line = build_renewal_job("0 2 * * 0", hook, Path("/var/log/letsencrypt-cron.log"))

    assert line == (
        '0 2 * * 0 /usr/bin/certbot renew --quiet '
        '--deploy-hook "/usr/local/bin/tak-letsencrypt-renewal /opt/tak/config.inc.sh" '
        ">> /var/log/letsencrypt-cron.log 2>&1"
    )
    assert RENEWAL_JOB_PATTERN.search(line)
    assert not HEALTH_JOB_PATTERN.search(line)


def test_health_job_line():
    line = build_health_job("/usr/local/bin/tak-renewal-failover", None, Path("/var/log/tak-renewal-system.log"))
    assert line == "0 1 * * * /usr/local/bin/tak-renewal-failover check >> /var/log/tak-renewal-system.log 2>&1"
    assert HEALTH_JOB_PATTERN.search(line)
    assert not RENEWAL_JOB_PATTERN.search(line)


def test_read_treats_missing_crontab_as_empty(host):
    assert Crontab(host).read() == []


def test_add_preserves_foreign_entries(host):
    host.crontab = ["15 * * * * /usr/bin/backup.sh"]
    cron = Crontab(host)
    job = build_renewal_job("0 2 * * 0", "tak-letsencrypt-renewal", Path("/tmp/cron.log"))

    cron.add(job)

    assert host.crontab == ["15 * * * * /usr/bin/backup.sh", job]
    assert cron.has_job(RENEWAL_JOB_PATTERN)


def test_remove_matching_only_rewrites_when_needed(host):
    host.crontab = ["15 * * * * /usr/bin/backup.sh"]
    cron = Crontab(host)

    assert cron.remove_matching(RENEWAL_JOB_PATTERN) == 0
    assert ["crontab", "-"] not in host.calls

    job = build_renewal_job("0 2 * * 0", "tak-letsencrypt-renewal", Path("/tmp/cron.log"))
    host.crontab.append(job)
    assert cron.remove_matching(RENEWAL_JOB_PATTERN) == 1
    assert host.crontab == ["15 * * * * /usr/bin/backup.sh"]


def test_replace_swaps_monitor_job(host):
    old = "0 1 * * * /usr/local/bin/tak-renewal-failover /old/config check >> /var/log/x 2>&1"
    host.crontab = [old, "15 * * * * /usr/bin/backup.sh"]
    new = build_health_job("/usr/local/bin/tak-renewal-failover", "/new/config", Path("/var/log/x"))

    Crontab(host).replace(HEALTH_JOB_PATTERN, new)

    assert host.crontab == ["15 * * * * /usr/bin/backup.sh", new]


def test_write_failure_raises_command_error(host):
    host.scripted[("crontab", "-")] = CommandResult(1, stderr="permission denied")
    with pytest.raises(CommandError) as ei:
        Crontab(host).add("0 2 * * 0 /usr/bin/certbot renew")
    assert ei.value.returncode == 1
    assert "permission denied" in str(ei.value)


def test_service_running_falls_back_to_service_command(host):
    host.scripted[("systemctl", "is-active", "cron")] = CommandResult(3)
    host.cron_running = True
    assert Crontab(host).service_running() is True
    assert host.ran("service", "cron", "status")

    host.cron_running = False
    assert Crontab(host).service_running() is False
