from __future__ import annotations

import logging

import pytest

from common.crontab import HEALTH_JOB_PATTERN, RENEWAL_JOB_PATTERN, Crontab
from common.system import SetupError
from common.systemd import TIMER_UNIT, Systemctl
from scheduling import dual_setup
from scheduling.dual_setup import Capabilities, choose_roles
from state.marker_store import PRIMARY_MARKER
from state.models import SchedulerKind


LOG = logging.getLogger("test.system")


def _jobs(host, pattern):
    return Crontab(host).matching(pattern)


def test_choose_roles():
    both = Capabilities(cron=True, systemd=True)
    assert choose_roles(both, SchedulerKind.CRON) == (SchedulerKind.CRON, SchedulerKind.SYSTEMD)
    assert choose_roles(both, SchedulerKind.SYSTEMD) == (SchedulerKind.SYSTEMD, SchedulerKind.CRON)
    assert choose_roles(Capabilities(cron=False, systemd=True), SchedulerKind.CRON) == (SchedulerKind.SYSTEMD, None)
    assert choose_roles(Capabilities(cron=True, systemd=False), SchedulerKind.CRON) == (SchedulerKind.CRON, None)
    with pytest.raises(SetupError):
        choose_roles(Capabilities(cron=False, systemd=False), SchedulerKind.CRON)


def test_setup_cron_primary_systemd_standby(host, paths, store, config):
    primary = dual_setup.setup(
        config, config_file="/opt/tak/config.inc.sh", runner=host, paths=paths, store=store, log=LOG
    )

    assert primary is SchedulerKind.CRON
    assert len(_jobs(host, RENEWAL_JOB_PATTERN)) == 1
    # systemd installed but held in standby
    assert Systemctl.units_installed(paths.systemd_unit_dir)
    assert host.unit(TIMER_UNIT) == {"active": False, "enabled": False}
    # monitor job calls the failover CLI with the config
    monitor = _jobs(host, HEALTH_JOB_PATTERN)
    assert monitor == [
        f"0 1 * * * {paths.bin_dir / 'tak-renewal-failover'} /opt/tak/config.inc.sh check >> {paths.system_log} 2>&1"
    ]

    state = store.read()
    assert state.primary is SchedulerKind.CRON
    assert state.fallback is SchedulerKind.SYSTEMD


def test_setup_systemd_primary_cron_standby(host, paths, store, config):
    primary = dual_setup.setup(
        config, preferred=SchedulerKind.SYSTEMD, runner=host, paths=paths, store=store, log=LOG
    )

    assert primary is SchedulerKind.SYSTEMD
    assert host.unit(TIMER_UNIT) == {"active": True, "enabled": True}
    assert _jobs(host, RENEWAL_JOB_PATTERN) == []
    assert len(_jobs(host, HEALTH_JOB_PATTERN)) == 1
    assert store.read().fallback is SchedulerKind.CRON


def test_setup_only_systemd(host, paths, store, config):
    host.has_crontab = False

    primary = dual_setup.setup(config, runner=host, paths=paths, store=store, log=LOG)

    assert primary is SchedulerKind.SYSTEMD
    state = store.read()
    assert state.primary is SchedulerKind.SYSTEMD
    assert state.fallback is None and not state.fallback_recorded


def test_setup_nothing_available(host, paths, store, config):
    host.has_crontab = False
    host.systemd = False
    with pytest.raises(SetupError):
        dual_setup.setup(config, runner=host, paths=paths, store=store, log=LOG)
    assert not store.read().primary_recorded


def test_setup_twice_keeps_single_monitor_job(host, paths, store, config):
    dual_setup.setup(config, runner=host, paths=paths, store=store, log=LOG)
    dual_setup.setup(config, runner=host, paths=paths, store=store, log=LOG)

    assert len(_jobs(host, HEALTH_JOB_PATTERN)) == 1
    assert len(_jobs(host, RENEWAL_JOB_PATTERN)) == 1


def test_remove_clears_everything(host, paths, store, config):
    host.crontab = ["15 * * * * /usr/bin/backup.sh"]
    dual_setup.setup(config, runner=host, paths=paths, store=store, log=LOG)

    dual_setup.remove(runner=host, paths=paths, store=store, log=LOG)

    assert host.crontab == ["15 * * * * /usr/bin/backup.sh"]
    assert not Systemctl.units_installed(paths.systemd_unit_dir)
    assert not store.read().primary_recorded


def test_status_report(host, paths, store, config):
    dual_setup.setup(config, runner=host, paths=paths, store=store, log=LOG)

    lines = dual_setup.status_report(config, runner=host, paths=paths, store=store)

    assert "Domain: tak.example.com" in lines
    assert "LetsEncrypt: Enabled" in lines
    assert "  Type: cron" in lines
    assert "  Status: Active" in lines
    assert "  Configured: Yes" in lines
    assert "  Status: Standby" in lines
    assert "  Frequency: Daily" in lines


def test_status_not_configured(host, paths, store, config):
    lines = dual_setup.status_report(config, runner=host, paths=paths, store=store)
    assert "  Not configured" in lines
    assert "  Configured: No" in lines
    assert "  Enabled: No" in lines


def test_run_once_logs_to_system_log(host, paths, store, config_file):
    assert dual_setup.run_once("setup", config_file=str(config_file), runner=host, paths=paths, store=store) == 0
    assert "Renewal system setup complete (primary: cron)" in paths.system_log.read_text()

    assert dual_setup.run_once("remove", runner=host, paths=paths, store=store) == 0
    assert host.crontab == []


def test_main_rejects_too_many_schedules(capsys):
    assert dual_setup.main(["setup", "0 2 * * 0", "0 3 * * 0", "0 4 * * 0"]) == 1


def test_cron_schedule_recorded_for_failover(host, paths, store, config):
    dual_setup.setup(config, primary_schedule="0 2 * * 1", runner=host, paths=paths, store=store, log=LOG)
    assert store.cron_schedule() == "0 2 * * 1"

    dual_setup.setup(
        config,
        preferred=SchedulerKind.SYSTEMD,
        fallback_schedule="0 3 * * 2",
        runner=host,
        paths=paths,
        store=store,
        log=LOG,
    )
    assert store.cron_schedule() == "0 3 * * 2"
    # the cron fallback is never installed at setup time
    assert _jobs(host, RENEWAL_JOB_PATTERN) == []


def test_invalid_fallback_schedule_installs_nothing(host, paths, store, config):
    with pytest.raises(SetupError, match="expected 5 fields"):
        dual_setup.setup(config, fallback_schedule="weekly", runner=host, paths=paths, store=store, log=LOG)
    assert host.crontab == []
    assert not store.read().primary_recorded


def test_status_with_unreadable_marker(host, paths, store, config, capsys):
    store.path(PRIMARY_MARKER).parent.mkdir(parents=True, exist_ok=True)
    store.path(PRIMARY_MARKER).write_text("garbage\n")

    assert dual_setup.run_once("status", runner=host, paths=paths, store=store) == 0

    out = capsys.readouterr().out
    assert "Unrecognized content in marker tak-renewal-primary" in out
    assert "  Type: unknown" in out
