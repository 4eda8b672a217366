from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Literal, Optional


RenewalStatus = Literal["SUCCESS", "FAILED"]


@dataclass(frozen=True)
class FailoverContext:
    """Context for a scheduler failover notification.

    Attributes
    - old_system: scheduler that failed its health check (cron/systemd)
    - new_system: scheduler detected as primary after activation
    - hostname: host the renewal system runs on
    - domain: TAK_URI, if configured
    - at: time of the failover (tz-aware)
    - log_path: log file operators should inspect
    """

    old_system: str
    new_system: str
    hostname: str
    domain: Optional[str]
    at: datetime
    log_path: str


@dataclass(frozen=True)
class RenewalContext:
    status: RenewalStatus
    message: str
    hostname: str
    at: datetime


def format_failover_subject(ctx: FailoverContext) -> str:
    return f"TAK Renewal System Failover: {ctx.old_system} -> {ctx.new_system}"


def format_failover_message(ctx: FailoverContext) -> str:
    lines = [
        f"TAK Server LetsEncrypt renewal system failover on {ctx.hostname}:",
        f"- Previous system: {ctx.old_system} (FAILED)",
        f"- New system: {ctx.new_system} (ACTIVE)",
        f"- Domain: {ctx.domain or 'unknown'}",
        f"- Time: {ctx.at.isoformat(timespec='seconds')}",
        f"- Check logs: tail -f {ctx.log_path}",
    ]
    return "\n".join(lines)


def failover_payload(ctx: FailoverContext) -> Dict[str, Any]:
    return {
        "status": "FAILOVER",
        "message": f"Renewal system failover: {ctx.old_system} -> {ctx.new_system}",
        "hostname": ctx.hostname,
        "domain": ctx.domain or "unknown",
        "old_system": ctx.old_system,
        "new_system": ctx.new_system,
        "timestamp": ctx.at.isoformat(timespec="seconds"),
    }


def format_renewal_subject(ctx: RenewalContext) -> str:
    return f"TAK Server LetsEncrypt Renewal {ctx.status}"


def renewal_payload(ctx: RenewalContext) -> Dict[str, Any]:
    return {
        "status": ctx.status,
        "message": ctx.message,
        "timestamp": ctx.at.isoformat(timespec="seconds"),
        "hostname": ctx.hostname,
    }


__all__ = [
    "FailoverContext",
    "RenewalContext",
    "format_failover_subject",
    "format_failover_message",
    "failover_payload",
    "format_renewal_subject",
    "renewal_payload",
]
