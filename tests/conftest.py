import os
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Set, Tuple

import pytest

# Ensure `src/` is importable as top-level for `common.*` imports
ROOT = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))
SRC_PATH = os.path.join(ROOT, "src")
if SRC_PATH not in sys.path:
    sys.path.insert(0, SRC_PATH)

from common.config import Paths, TakConfig  # noqa: E402
from common.system import CommandResult, CommandRunner  # noqa: E402
from common.systemd import TIMER_UNIT  # noqa: E402
from state.marker_store import MarkerStore  # noqa: E402


class FakeHost(CommandRunner):
    """
    In-memory stand-in for the host's crontab, systemd and cron service.

    - `crontab` holds the current user's crontab lines.
    - `units[name]` tracks {"active", "enabled"} for systemd units.
    - `fail` lists (program, verb) pairs that should exit non-zero.
    - `scripted` maps an argv prefix to a canned CommandResult.
    - every call is recorded in `calls` (argv) and `privileged` (argv of sudo-able calls).
    """

    def __init__(self) -> None:
        super().__init__()
        self.crontab: List[str] = []
        self.has_crontab = True
        self.systemd = True
        self.cron_running = True
        self.units: Dict[str, Dict[str, bool]] = {}
        self.service_state = "inactive"
        self.next_elapse = "Sun 2026-10-18 00:00:00 UTC"
        self.programs: Dict[str, str] = {}
        self.fail: Set[Tuple[str, str]] = set()
        self.scripted: Dict[Tuple[str, ...], CommandResult] = {}
        self.calls: List[List[str]] = []
        self.privileged: List[List[str]] = []
        self.cwds: List[Optional[str]] = []

    # -------- helpers for tests --------
    def unit(self, name: str) -> Dict[str, bool]:
        return self.units.setdefault(name, {"active": False, "enabled": False})

    def set_timer(self, *, active: bool, enabled: bool) -> None:
        self.unit(TIMER_UNIT).update(active=active, enabled=enabled)

    def ran(self, *prefix: str) -> bool:
        return any(tuple(c[: len(prefix)]) == prefix for c in self.calls)

    # -------- CommandRunner interface --------
    def which(self, name: str) -> Optional[str]:
        if name == "crontab":
            return "/usr/bin/crontab" if self.has_crontab else None
        return self.programs.get(name)

    def run(
        self,
        args: Sequence[str],
        *,
        input: Optional[str] = None,
        cwd=None,
        privileged: bool = False,
        interactive: bool = False,
    ) -> CommandResult:
        argv = list(args)
        self.calls.append(argv)
        self.cwds.append(str(cwd) if cwd is not None else None)
        if privileged:
            self.privileged.append(argv)
        for n in range(len(argv), 0, -1):
            hit = self.scripted.get(tuple(argv[:n]))
            if hit is not None:
                return hit
        if len(argv) > 1 and (argv[0], argv[1]) in self.fail:
            return CommandResult(1, stderr=f"{argv[0]} {argv[1]} failed")

        program = argv[0]
        if program == "crontab":
            return self._crontab(argv, input)
        if program == "systemctl":
            return self._systemctl(argv)
        if program == "service":
            return CommandResult(0 if self.cron_running else 3)
        return CommandResult(0)

    def _crontab(self, argv: List[str], input: Optional[str]) -> CommandResult:
        if not self.has_crontab:
            return CommandResult(127, stderr="crontab: not found")
        if argv[1:] == ["-l"]:
            if not self.crontab:
                return CommandResult(1, stderr="no crontab for root")
            return CommandResult(0, stdout="".join(f"{ln}\n" for ln in self.crontab))
        if argv[1:] == ["-"]:
            self.crontab = [ln for ln in (input or "").splitlines() if ln.strip()]
            return CommandResult(0)
        return CommandResult(1, stderr="usage")

    def _systemctl(self, argv: List[str]) -> CommandResult:
        verb = argv[1]
        if verb == "is-active" and argv[2] == "cron":
            return CommandResult(0 if self.cron_running else 3)
        if not self.systemd:
            return CommandResult(127, stderr="systemctl: not found")
        if verb == "--version":
            return CommandResult(0, stdout="systemd 255")
        if verb == "is-active":
            return CommandResult(0 if self.unit(argv[2])["active"] else 3)
        if verb == "is-enabled":
            return CommandResult(0 if self.unit(argv[2])["enabled"] else 1)
        if verb == "show":
            prop = argv[3]
            if prop == "--property=ActiveState":
                return CommandResult(0, stdout=f"{self.service_state}\n")
            if prop == "--property=NextElapseUSecRealtime":
                scheduled = self.unit(TIMER_UNIT)["active"]
                return CommandResult(0, stdout=f"{self.next_elapse}\n" if scheduled else "\n")
        if verb in ("enable", "disable"):
            self.unit(argv[2])["enabled"] = verb == "enable"
        elif verb in ("start", "stop"):
            self.unit(argv[2])["active"] = verb == "start"
        elif verb == "status":
            return CommandResult(0, stdout=f"* {argv[2]}\n")
        return CommandResult(0)


def write_cert(path: Path, *, days: int, cn: str = "tak.example.com", key_path: Optional[Path] = None) -> Path:
    """Write a self-signed PEM certificate expiring `days` (+ a few hours) from now."""
    from cryptography import x509
    from cryptography.hazmat.primitives import hashes, serialization
    from cryptography.hazmat.primitives.asymmetric import ec
    from cryptography.x509.oid import NameOID

    key = ec.generate_private_key(ec.SECP256R1())
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, cn)])
    now = datetime.now(timezone.utc)
    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(days=60))
        .not_valid_after(now + timedelta(days=days, hours=6))
        .sign(key, hashes.SHA256())
    )
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(cert.public_bytes(serialization.Encoding.PEM))
    if key_path is not None:
        key_path.write_bytes(
            key.private_bytes(
                serialization.Encoding.PEM,
                serialization.PrivateFormat.PKCS8,
                serialization.NoEncryption(),
            )
        )
    return path


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path):
    # Never read the host's real config.inc.sh or TAK_* variables
    for key in (
        "TAK_URI",
        "LETSENCRYPT",
        "LE_EMAIL",
        "LE_VALIDATOR",
        "LE_NOTIFICATION_EMAIL",
        "LE_WEBHOOK_URL",
        "RELEASE_PATH",
        "ROOT_PATH",
        "INSTALLER",
        "CA_PASS",
        "TAK_CA_FILE",
    ):
        monkeypatch.delenv(key, raising=False)
    monkeypatch.setenv("TAK_CONFIG_FILE", str(tmp_path / "absent-config.inc.sh"))


@pytest.fixture
def host() -> FakeHost:
    return FakeHost()


@pytest.fixture
def paths(tmp_path: Path) -> Paths:
    return Paths(
        state_dir=tmp_path / "lib",
        log_dir=tmp_path / "log",
        letsencrypt_live=tmp_path / "letsencrypt" / "live",
        backup_dir=tmp_path / "backups",
        systemd_unit_dir=tmp_path / "systemd",
        bin_dir=tmp_path / "bin",
    )


@pytest.fixture
def store(paths: Paths) -> MarkerStore:
    return MarkerStore(paths.state_dir)


@pytest.fixture
def config(tmp_path: Path) -> TakConfig:
    return TakConfig(
        tak_uri="tak.example.com",
        letsencrypt=True,
        le_email="admin@example.com",
        release_path=str(tmp_path / "release"),
        root_path=str(tmp_path / "root"),
        installer="ubuntu",
        ca_pass="atakatak",
        tak_ca_file="tak-ca",
    )


@pytest.fixture
def config_file(tmp_path: Path) -> Path:
    p = tmp_path / "config.inc.sh"
    p.write_text(
        "\n".join(
            [
                'export TAK_URI="tak.example.com"',
                "export LETSENCRYPT=true",
                'export LE_EMAIL="admin@example.com"',
                f'export RELEASE_PATH="{tmp_path / "release"}"',
                "export INSTALLER=ubuntu",
                "",
            ]
        ),
        encoding="utf-8",
    )
    return p


@pytest.fixture
def make_cert():
    return write_cert
