from __future__ import annotations

import argparse
import json
import sys
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from common.certs import DEFAULT_WARN_DAYS, CertificateStatus, check_certificate
from common.config import Paths, TakConfig, load_config, split_config_arg
from common.system import hostname


# Stable keys for the JSON report
_JSON_NAMES = {
    "Certificate": "letsencrypt",
    "Full Chain": "letsencrypt_fullchain",
    "TAK LetsEncrypt": "tak_letsencrypt",
    "TAK CA": "tak_ca",
    "TAK Server": "tak_server",
}


@dataclass
class CertCheckResult:
    certificates: List[CertificateStatus] = field(default_factory=list)
    problems: List[str] = field(default_factory=list)

    @property
    def issues(self) -> int:
        return sum(1 for c in self.certificates if not c.ok) + len(self.problems)


def _first_match(cert_dir: Path, patterns: List[str], exclude: Optional[str] = None) -> Optional[Path]:
    for pattern in patterns:
        for p in sorted(cert_dir.glob(pattern)):
            if exclude and exclude in p.name:
                continue
            if p.is_file():
                return p
    return None


def collect(
    config: TakConfig,
    *,
    paths: Paths,
    warn_days: int = DEFAULT_WARN_DAYS,
    now: Optional[datetime] = None,
) -> CertCheckResult:
    """Check the LetsEncrypt live certificates and the TAK server certificates."""
    result = CertCheckResult()

    if config.letsencrypt_ready:
        live = paths.live_dir(config.tak_uri or "")
        if live.is_dir():
            for filename, name in (("cert.pem", "Certificate"), ("fullchain.pem", "Full Chain")):
                result.certificates.append(check_certificate(live / filename, name, warn_days=warn_days, now=now))
        else:
            result.problems.append(f"No LetsEncrypt certificates found for domain {config.tak_uri}")

    cert_dir = config.tak_certs_files
    if cert_dir is None or not Path(config.release_path or "").is_dir():
        result.problems.append("TAK release path not found or configured")
        return result
    if not cert_dir.is_dir():
        result.problems.append(f"TAK certificate directory not found: {cert_dir}")
        return result

    le_pem = cert_dir / "letsencrypt.pem"
    if le_pem.is_file():
        result.certificates.append(check_certificate(le_pem, "TAK LetsEncrypt", warn_days=warn_days, now=now))
    ca = _first_match(cert_dir, ["*ca.pem", "*ca-crt.pem"])
    if ca is not None:
        result.certificates.append(check_certificate(ca, "TAK CA", warn_days=warn_days, now=now))
    server = _first_match(cert_dir, ["*server*.pem", "*tak*.pem"], exclude="letsencrypt")
    if server is not None:
        result.certificates.append(check_certificate(server, "TAK Server", warn_days=warn_days, now=now))
    return result


def json_report(config: TakConfig, result: CertCheckResult, *, now: Optional[datetime] = None) -> Dict[str, Any]:
    now = now or datetime.now().astimezone()
    return {
        "timestamp": now.isoformat(timespec="seconds"),
        "hostname": hostname(),
        "domain": config.tak_uri or "unknown",
        "certificates": [
            {
                "name": _JSON_NAMES.get(c.name, c.name.lower().replace(" ", "_")),
                "path": c.path,
                "expiry_date": c.expiry_display if c.expiry else None,
                "days_remaining": c.days_remaining,
                "status": c.status,
            }
            for c in result.certificates
        ],
    }


def _describe(c: CertificateStatus) -> str:
    if c.status == "missing":
        return f"  {c.name}: Certificate file not found"
    if c.status == "unreadable":
        return f"  {c.name}: Unable to read certificate expiration"
    label = {"ok": "OK", "warning": "WARNING", "expired": "EXPIRED"}[c.status]
    return "  %-20s: %s (%d days) - %s" % (c.name, c.expiry_display, c.days_remaining, label)


def text_report(config: TakConfig, result: CertCheckResult, *, warn_days: int) -> List[str]:
    lines = [
        "Certificate Expiration Check",
        "============================",
        f"Warning threshold: {warn_days} days",
        "",
    ]
    if not config.letsencrypt_ready:
        lines.append("LetsEncrypt not configured or disabled")
    lines.extend(_describe(c) for c in result.certificates)
    lines.extend(f"  {p}" for p in result.problems)
    lines.append("")
    if result.issues == 0:
        lines.append("All certificates are OK")
    else:
        lines.append(f"Found {result.issues} certificate issues")
        lines.append("")
        lines.append("Recommendations:")
        lines.append("- For LetsEncrypt certificates: Run 'sudo certbot renew' or wait for automatic renewal")
        lines.append("- For TAK certificates: Regenerate certificates or import new LetsEncrypt certificates")
        lines.append("- Check renewal cron job: crontab -l | grep certbot")
    return lines


def run_once(
    *,
    config_file: Optional[str] = None,
    warn_days: int = DEFAULT_WARN_DAYS,
    as_json: bool = False,
    paths: Optional[Paths] = None,
    now: Optional[datetime] = None,
) -> int:
    """Print the report; the exit code is the number of certificate issues."""
    paths = paths or Paths.from_env()
    config = load_config(config_file)
    result = collect(config, paths=paths, warn_days=warn_days, now=now)
    if as_json:
        print(json.dumps(json_report(config, result, now=now), indent=2))
    else:
        for line in text_report(config, result, warn_days=warn_days):
            print(line)
    return result.issues


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(prog="tak-cert-check", description="Check certificate expiration dates.")
    parser.add_argument("config_file", nargs="?", help="Path to config.inc.sh")
    parser.add_argument(
        "-w", "--warn-days", type=int, default=DEFAULT_WARN_DAYS, help="Days before expiration to warn (default: 30)"
    )
    parser.add_argument("-j", "--json", action="store_true", help="Output in JSON format")
    ns = parser.parse_args(argv)
    config_file, rest = split_config_arg([ns.config_file] if ns.config_file else [])
    if rest:
        parser.error(f"config file not found: {rest[0]}")
    return run_once(config_file=config_file, warn_days=ns.warn_days, as_json=ns.json)


if __name__ == "__main__":
    sys.exit(main())
