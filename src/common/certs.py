from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path
from typing import Literal, Optional

from cryptography import x509
from pydantic import BaseModel, Field


DEFAULT_WARN_DAYS = 30

CertState = Literal["ok", "warning", "expired", "missing", "unreadable"]


class CertificateError(ValueError):
    """Certificate file exists but could not be parsed."""


class CertificateStatus(BaseModel):
    """Expiry status of a single PEM certificate on disk."""

    name: str
    path: str
    expiry: Optional[datetime] = None
    days_remaining: Optional[int] = None
    status: CertState = Field(default="missing")

    @property
    def ok(self) -> bool:
        return self.status == "ok"

    @property
    def expiry_display(self) -> str:
        # openssl `-enddate` style, e.g. "Sep  8 12:00:00 2025 GMT"
        if self.expiry is None:
            return "unknown"
        return self.expiry.strftime("%b %e %H:%M:%S %Y GMT")


def _utc(dt: datetime) -> datetime:
    return dt if dt.tzinfo is not None else dt.replace(tzinfo=timezone.utc)


def read_expiry(path: Path) -> datetime:
    """Return the notAfter of the first certificate in a PEM file (UTC, tz-aware)."""
    try:
        data = Path(path).read_bytes()
    except OSError as exc:
        raise CertificateError(f"Cannot read certificate {path}: {exc}") from exc
    try:
        cert = x509.load_pem_x509_certificate(data)
    except ValueError as exc:
        raise CertificateError(f"Invalid PEM certificate: {path}") from exc
    return _utc(cert.not_valid_after_utc)


def days_until(expiry: datetime, now: Optional[datetime] = None) -> int:
    """Whole days left before `expiry` (negative once expired, floored)."""
    now = _utc(now) if now is not None else datetime.now(timezone.utc)
    return (_utc(expiry) - now).days


def classify(days_left: int, warn_days: int = DEFAULT_WARN_DAYS) -> CertState:
    if days_left < 0:
        return "expired"
    if days_left < warn_days:
        return "warning"
    return "ok"


def check_certificate(
    path: Path,
    name: str,
    *,
    warn_days: int = DEFAULT_WARN_DAYS,
    now: Optional[datetime] = None,
) -> CertificateStatus:
    p = Path(path)
    if not p.is_file():
        return CertificateStatus(name=name, path=str(p), status="missing")
    try:
        expiry = read_expiry(p)
    except CertificateError:
        return CertificateStatus(name=name, path=str(p), status="unreadable")
    days = days_until(expiry, now)
    return CertificateStatus(
        name=name,
        path=str(p),
        expiry=expiry,
        days_remaining=days,
        status=classify(days, warn_days),
    )


__all__ = [
    "CertificateError",
    "CertificateStatus",
    "DEFAULT_WARN_DAYS",
    "read_expiry",
    "days_until",
    "classify",
    "check_certificate",
]
