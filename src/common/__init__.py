"""
Common utilities for the TAK Server LetsEncrypt renewal jobs.

Modules:
- config: config.inc.sh loading, validation, filesystem layout
- system: subprocess runner used for crontab/systemctl/certbot/keytool
- crontab, systemd: the two renewal scheduler backends
- certs: certificate expiry inspection
- notify, alerts: email/webhook delivery and message formatting
- logs: job logger setup
"""

__all__ = [
    "alerts",
    "certs",
    "config",
    "crontab",
    "logs",
    "notify",
    "system",
    "systemd",
]
