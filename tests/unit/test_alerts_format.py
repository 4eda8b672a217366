from datetime import datetime, timezone

from common.alerts import (
    FailoverContext,
    RenewalContext,
    failover_payload,
    format_failover_message,
    format_failover_subject,
    format_renewal_subject,
    renewal_payload,
)


def _ctx(domain="tak.example.com"):
    return FailoverContext(
        old_system="cron",
        new_system="systemd",
        hostname="tak01",
        domain=domain,
        at=datetime(2026, 3, 1, 1, 0, tzinfo=timezone.utc),
        log_path="/var/log/tak-renewal-failover.log",
    )


def test_format_failover_message():
    ctx = _ctx()
    msg = format_failover_message(ctx)

    # Header names the host
    assert msg.startswith("TAK Server LetsEncrypt renewal system failover on tak01:")

    assert "- Previous system: cron (FAILED)" in msg
    assert "- New system: systemd (ACTIVE)" in msg
    assert "- Domain: tak.example.com" in msg
    assert "- Time: 2026-03-01T01:00:00+00:00" in msg
    assert msg.endswith("- Check logs: tail -f /var/log/tak-renewal-failover.log")

    assert format_failover_subject(ctx) == "TAK Renewal System Failover: cron -> systemd"


def test_failover_payload_without_domain():
    payload = failover_payload(_ctx(domain=None))

    assert payload["status"] == "FAILOVER"
    assert payload["domain"] == "unknown"
    assert payload["old_system"] == "cron" and payload["new_system"] == "systemd"
    assert payload["timestamp"] == "2026-03-01T01:00:00+00:00"


def test_renewal_subject_and_payload():
    ctx = RenewalContext(
        status="FAILED",
        message="LetsEncrypt certificate import failed",
        hostname="tak01",
        at=datetime(2026, 3, 1, tzinfo=timezone.utc),
    )
    assert format_renewal_subject(ctx) == "TAK Server LetsEncrypt Renewal FAILED"
    assert renewal_payload(ctx) == {
        "status": "FAILED",
        "message": "LetsEncrypt certificate import failed",
        "timestamp": "2026-03-01T00:00:00+00:00",
        "hostname": "tak01",
    }
