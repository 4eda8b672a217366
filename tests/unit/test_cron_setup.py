from __future__ import annotations

import logging

import pytest

from common.config import TakConfig
from common.crontab import RENEWAL_JOB_PATTERN
from common.system import CommandResult, SetupError
from scheduling import cron_setup


LOG = logging.getLogger("test.cron")


def test_setup_installs_job_and_logs(host, paths, config):
    added = cron_setup.setup(config, config_file="/opt/tak/config.inc.sh", runner=host, paths=paths, log=LOG)

    assert added is True
    assert len(host.crontab) == 1
    job = host.crontab[0]
    assert job.startswith("0 2 * * 0 /usr/bin/certbot renew --quiet --deploy-hook ")
    assert f'"{paths.bin_dir / "tak-letsencrypt-renewal"} /opt/tak/config.inc.sh"' in job
    assert job.endswith(f">> {paths.cron_log} 2>&1")
    assert paths.renewal_log.exists() and paths.cron_log.exists()
    assert oct(paths.cron_log.stat().st_mode & 0o777) == "0o644"


def test_setup_is_idempotent(host, paths, config):
    cron_setup.setup(config, runner=host, paths=paths, log=LOG)
    added = cron_setup.setup(config, schedule="0 4 * * *", runner=host, paths=paths, log=LOG)

    assert added is False
    assert len(host.crontab) == 1


def test_setup_uses_program_on_path(host, paths, config):
    host.programs["tak-letsencrypt-renewal"] = "/usr/bin/tak-letsencrypt-renewal"
    cron_setup.setup(config, schedule="30 4 * * *", runner=host, paths=paths, log=LOG)
    assert host.crontab[0].startswith('30 4 * * * /usr/bin/certbot renew --quiet --deploy-hook "/usr/bin/tak-letsencrypt-renewal"')


@pytest.mark.parametrize(
    "cfg",
    [
        TakConfig(tak_uri="tak.example.com", letsencrypt=False),
        TakConfig(tak_uri=None, letsencrypt=True),
    ],
)
def test_setup_requires_letsencrypt(host, paths, cfg):
    with pytest.raises(SetupError):
        cron_setup.setup(cfg, runner=host, paths=paths, log=LOG)
    assert host.crontab == []


def test_setup_rejects_bad_schedule(host, paths, config):
    with pytest.raises(SetupError):
        cron_setup.setup(config, schedule="weekly", runner=host, paths=paths, log=LOG)


def test_setup_without_crontab(host, paths, config):
    host.has_crontab = False
    with pytest.raises(SetupError):
        cron_setup.setup(config, runner=host, paths=paths, log=LOG)


def test_setup_write_failure(host, paths, config):
    host.scripted[("crontab", "-")] = CommandResult(1, stderr="denied")
    with pytest.raises(SetupError):
        cron_setup.setup(config, runner=host, paths=paths, log=LOG)


def test_remove_leaves_other_jobs(host, paths, config):
    host.crontab = ["15 * * * * /usr/bin/backup.sh"]
    cron_setup.setup(config, runner=host, paths=paths, log=LOG)

    assert cron_setup.remove(runner=host, log=LOG) == 1
    assert host.crontab == ["15 * * * * /usr/bin/backup.sh"]
    assert not any(RENEWAL_JOB_PATTERN.search(ln) for ln in host.crontab)


def test_status_report(host, paths, config, make_cert):
    cron_setup.setup(config, runner=host, paths=paths, log=LOG)
    make_cert(paths.live_dir("tak.example.com") / "cert.pem", days=10)
    paths.renewal_log.write_text("[2026-10-01 02:00:00] [INFO] LetsEncrypt certificate renewal completed: SUCCESS\n")

    lines = cron_setup.status_report(config, runner=host, paths=paths)

    assert "Domain: tak.example.com" in lines
    assert "Cron jobs configured: 1" in lines
    assert any("SUCCESS" in ln for ln in lines)
    assert "  Days remaining: 10" in lines
    assert "  Status: WARNING - Certificate expires soon!" in lines


def test_status_when_not_configured(host, paths):
    lines = cron_setup.status_report(TakConfig(), runner=host, paths=paths)
    assert lines[-1] == "LetsEncrypt: Not configured or disabled"


def test_run_once_with_config_file(host, paths, config_file, capsys):
    assert cron_setup.run_once("setup", config_file=str(config_file), runner=host, paths=paths) == 0
    assert str(config_file) in host.crontab[0]

    assert cron_setup.run_once("status", config_file=str(config_file), runner=host, paths=paths) == 0
    assert "Cron jobs configured: 1" in capsys.readouterr().out

    assert cron_setup.run_once("remove", config_file=str(config_file), runner=host, paths=paths) == 0
    assert host.crontab == []


def test_run_once_setup_failure_exits_1(host, paths):
    assert cron_setup.run_once("setup", runner=host, paths=paths) == 1


def test_main_prints_help_without_command(capsys):
    assert cron_setup.main([]) == 1
    assert "usage:" in capsys.readouterr().out


def test_run_once_keeps_config_from_environment(host, paths, config_file, monkeypatch):
    monkeypatch.setenv("TAK_CONFIG_FILE", str(config_file))

    assert cron_setup.run_once("setup", runner=host, paths=paths) == 0

    [job] = host.crontab
    assert f'--deploy-hook "{paths.bin_dir / "tak-letsencrypt-renewal"} {config_file}"' in job
