"""Load the TAK tools configuration.

The deployment keeps its settings in a bash `config.inc.sh` made of
`export KEY=value` lines. python-dotenv understands that format (including
`${VAR:-default}` expansion), so the file is read with `dotenv_values` and
layered over the process environment the same way `source` would.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Literal, Optional, Sequence, Tuple

from dotenv import dotenv_values
from pydantic import BaseModel, Field


ENV_CONFIG_FILE = "TAK_CONFIG_FILE"
DEFAULT_CONFIG_FILE = "/opt/tak/tak-tools/config.inc.sh"

ENV_STATE_DIR = "TAK_RENEWAL_STATE_DIR"
ENV_LOG_DIR = "TAK_RENEWAL_LOG_DIR"
ENV_LIVE_DIR = "LETSENCRYPT_LIVE_DIR"
ENV_BACKUP_DIR = "TAK_CERT_BACKUP_DIR"
ENV_UNIT_DIR = "SYSTEMD_UNIT_DIR"
ENV_BIN_DIR = "TAK_RENEWAL_BIN_DIR"

# Keys read from env/config file, mapped to TakConfig fields
_KEYS: Dict[str, str] = {
    "TAK_URI": "tak_uri",
    "LETSENCRYPT": "letsencrypt",
    "LE_EMAIL": "le_email",
    "LE_VALIDATOR": "le_validator",
    "LE_NOTIFICATION_EMAIL": "le_notification_email",
    "LE_WEBHOOK_URL": "le_webhook_url",
    "RELEASE_PATH": "release_path",
    "ROOT_PATH": "root_path",
    "INSTALLER": "installer",
    "CA_PASS": "ca_pass",
    "TAK_CA_FILE": "tak_ca_file",
}

_IPV4_RE = re.compile(r"^[0-9]+\.[0-9]+\.[0-9]+\.[0-9]+$")
_FQDN_RE = re.compile(
    r"^[a-zA-Z0-9]([a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?(\.[a-zA-Z0-9]([a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?)*$"
)
_EMAIL_RE = re.compile(r"^[^@]+@[^@]+\.[^@]+$")


def _getenv(name: str, default: Optional[str] = None) -> Optional[str]:
    v = os.environ.get(name)
    return v if v not in (None, "") else default


class TakConfig(BaseModel):
    """Subset of `config.inc.sh` used by the certificate lifecycle jobs."""

    source: Optional[str] = Field(default=None, description="Config file the values came from")
    tak_uri: Optional[str] = None
    letsencrypt: bool = False
    le_email: Optional[str] = None
    le_validator: str = "web"
    le_notification_email: Optional[str] = None
    le_webhook_url: Optional[str] = None
    release_path: Optional[str] = None
    root_path: Optional[str] = None
    installer: Optional[str] = None
    ca_pass: Optional[str] = None
    tak_ca_file: Optional[str] = None

    @property
    def letsencrypt_ready(self) -> bool:
        return bool(self.tak_uri) and self.letsencrypt

    @property
    def tak_certs_files(self) -> Optional[Path]:
        if not self.release_path:
            return None
        return Path(self.release_path) / "tak" / "certs" / "files"


def _resolve_config_file(config_file: Optional[str]) -> Optional[Path]:
    if config_file:
        return Path(config_file)
    from_env = _getenv(ENV_CONFIG_FILE)
    if from_env:
        return Path(from_env)
    default = Path(DEFAULT_CONFIG_FILE)
    return default if default.is_file() else None


def load_config(config_file: Optional[str] = None) -> TakConfig:
    """Build a TakConfig from the environment overlaid with `config_file`.

    A named file that does not exist is treated as empty, mirroring
    `source` of a missing file in the shell tooling (which only warns).
    """
    raw: Dict[str, Optional[str]] = {k: _getenv(k) for k in _KEYS}
    path = _resolve_config_file(config_file)
    if path is not None and path.is_file():
        for k, v in dotenv_values(path).items():
            if k in _KEYS and v not in (None, ""):
                raw[k] = v

    data: Dict[str, object] = {"source": str(path) if path is not None else None}
    for key, field in _KEYS.items():
        val = raw.get(key)
        if val is None:
            continue
        if field == "letsencrypt":
            data[field] = val.strip() == "true"
        else:
            data[field] = val.strip()
    return TakConfig.model_validate(data)


# -------- Validation --------
@dataclass(frozen=True)
class ConfigIssue:
    level: Literal["ERROR", "WARNING"]
    variable: str
    message: str
    suggestion: str = ""


def is_ipv4(value: str) -> bool:
    # Dotted-quad shape only; 999.1.1.1 is rejected by certbot either way
    return _IPV4_RE.match(value) is not None


def is_fqdn(value: str) -> bool:
    return not is_ipv4(value) and _FQDN_RE.match(value) is not None


def is_email(value: str) -> bool:
    return _EMAIL_RE.match(value) is not None


def validate_letsencrypt(config: TakConfig) -> List[ConfigIssue]:
    """Check the LetsEncrypt-related settings; returns an empty list when usable."""
    issues: List[ConfigIssue] = []
    if not config.tak_uri:
        issues.append(ConfigIssue("ERROR", "TAK_URI", "Required variable not set", 'export TAK_URI="<value>"'))
    elif not is_fqdn(config.tak_uri):
        issues.append(
            ConfigIssue(
                "ERROR",
                "TAK_URI",
                "Must be a domain name (FQDN), not an IP address",
                "Use a domain like 'tak.example.com'",
            )
        )

    if not config.letsencrypt:
        return issues

    if not config.le_email:
        issues.append(ConfigIssue("ERROR", "LE_EMAIL", "Required variable not set", 'export LE_EMAIL="<value>"'))
    elif not is_email(config.le_email):
        issues.append(ConfigIssue("ERROR", "LE_EMAIL", "Invalid email format", 'export LE_EMAIL="admin@example.com"'))

    if config.le_validator not in ("web", "dns"):
        issues.append(ConfigIssue("ERROR", "LE_VALIDATOR", "Must be 'web' or 'dns'", 'export LE_VALIDATOR="web"'))

    if config.le_notification_email and not is_email(config.le_notification_email):
        issues.append(ConfigIssue("WARNING", "LE_NOTIFICATION_EMAIL", "Invalid email format"))

    if config.le_webhook_url and not re.match(r"^https?://", config.le_webhook_url):
        issues.append(ConfigIssue("WARNING", "LE_WEBHOOK_URL", "Should start with http:// or https://"))

    return issues


# -------- Filesystem layout --------
@dataclass(frozen=True)
class Paths:
    state_dir: Path = Path("/var/lib")
    log_dir: Path = Path("/var/log")
    letsencrypt_live: Path = Path("/etc/letsencrypt/live")
    backup_dir: Path = Path("/var/backups/tak-certs")
    systemd_unit_dir: Path = Path("/etc/systemd/system")
    bin_dir: Path = Path("/usr/local/bin")

    @classmethod
    def from_env(cls) -> "Paths":
        d = cls()
        return cls(
            state_dir=Path(_getenv(ENV_STATE_DIR, str(d.state_dir))),  # type: ignore[arg-type]
            log_dir=Path(_getenv(ENV_LOG_DIR, str(d.log_dir))),  # type: ignore[arg-type]
            letsencrypt_live=Path(_getenv(ENV_LIVE_DIR, str(d.letsencrypt_live))),  # type: ignore[arg-type]
            backup_dir=Path(_getenv(ENV_BACKUP_DIR, str(d.backup_dir))),  # type: ignore[arg-type]
            systemd_unit_dir=Path(_getenv(ENV_UNIT_DIR, str(d.systemd_unit_dir))),  # type: ignore[arg-type]
            bin_dir=Path(_getenv(ENV_BIN_DIR, str(d.bin_dir))),  # type: ignore[arg-type]
        )

    def live_dir(self, domain: str) -> Path:
        return self.letsencrypt_live / domain

    @property
    def renewal_log(self) -> Path:
        return self.log_dir / "letsencrypt-renewal.log"

    @property
    def cron_log(self) -> Path:
        return self.log_dir / "letsencrypt-cron.log"

    @property
    def system_log(self) -> Path:
        return self.log_dir / "tak-renewal-system.log"

    @property
    def failover_log(self) -> Path:
        return self.log_dir / "tak-renewal-failover.log"

    @property
    def health_log(self) -> Path:
        return self.log_dir / "tak-renewal-health.log"


# -------- CLI helpers --------
def split_config_arg(positionals: Sequence[str]) -> Tuple[Optional[str], List[str]]:
    """Separate an optional leading config file from the remaining arguments.

    The jobs keep the `prog [config_file] <command> [args]` calling convention:
    the first positional is taken as the config file only when it names an
    existing file.
    """
    args = list(positionals)
    if args and Path(args[0]).is_file():
        return args[0], args[1:]
    return None, args


__all__ = [
    "TakConfig",
    "ConfigIssue",
    "Paths",
    "load_config",
    "validate_letsencrypt",
    "split_config_arg",
    "is_fqdn",
    "is_email",
    "is_ipv4",
]
