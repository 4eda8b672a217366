from __future__ import annotations

import logging
import time
from typing import Any, Dict, Optional

import httpx

from .system import CommandRunner


class NotificationError(RuntimeError):
    """Base error for notification delivery."""


class WebhookError(NotificationError):
    """Webhook endpoint rejected the payload or was unreachable."""


class MailError(NotificationError):
    """The local `mail` command failed or is not installed."""


class WebhookClient:
    """
    Minimal JSON webhook client used for renewal/failover status events.

    Notes
    - POSTs a JSON body; any 2xx response counts as delivered.
    - Retries transient HTTP errors (429/5xx) and transport errors with backoff,
      honoring a numeric `Retry-After` header when present.
    """

    def __init__(
        self,
        url: str,
        *,
        timeout: float = 15.0,
        max_attempts: int = 3,
        client: Optional[httpx.Client] = None,
        sleep=time.sleep,
    ) -> None:
        if not url:
            raise ValueError("url is required")
        self._url = url
        self._max_attempts = max_attempts
        self._owns_client = client is None
        self._client = client or httpx.Client(timeout=timeout)
        self._sleep = sleep

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def __enter__(self) -> "WebhookClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def post(self, payload: Dict[str, Any]) -> None:
        attempt = 0
        backoff = 0.5
        last_exc: Optional[Exception] = None
        while attempt < self._max_attempts:
            try:
                resp = self._client.post(self._url, json=payload)
            except (httpx.TimeoutException, httpx.TransportError) as exc:
                last_exc = exc
            else:
                if 200 <= resp.status_code < 300:
                    return

                if resp.status_code in (429, 500, 502, 503, 504):
                    retry_after = None
                    ra = resp.headers.get("Retry-After")
                    if ra is not None:
                        try:
                            retry_after = float(ra)
                        except ValueError:
                            retry_after = None
                    delay = retry_after if retry_after is not None else backoff
                    self._sleep(min(delay, 10.0))
                    backoff = min(backoff * 2, 8.0)
                    attempt += 1
                    continue

                raise WebhookError(f"HTTP {resp.status_code} from webhook: {resp.text[:200]}")

            attempt += 1
            self._sleep(backoff)
            backoff = min(backoff * 2, 8.0)

        if last_exc is not None:
            raise WebhookError("Webhook delivery failed after retries") from last_exc
        raise WebhookError("Webhook delivery failed after retries (server kept failing)")


def send_mail(runner: CommandRunner, to: str, subject: str, body: str) -> None:
    """Deliver a plain-text mail through the local `mail` command."""
    if runner.which("mail") is None:
        raise MailError("mail command not available")
    res = runner.run(["mail", "-s", subject, to], input=body)
    if not res.ok:
        raise MailError(f"mail exited {res.returncode}: {res.stderr.strip()[:200]}")


class Notifier:
    """
    Fan a status event out to email and/or webhook.

    Delivery is best-effort: failures are logged as warnings and never
    propagate, so a broken mail relay cannot fail a renewal or a failover.
    """

    def __init__(
        self,
        *,
        runner: CommandRunner,
        email: Optional[str] = None,
        webhook_url: Optional[str] = None,
        logger: Optional[logging.Logger] = None,
        http_client: Optional[httpx.Client] = None,
    ) -> None:
        self._runner = runner
        self._email = email
        self._webhook_url = webhook_url
        self._log = logger or logging.getLogger(__name__)
        self._http_client = http_client

    @property
    def configured(self) -> bool:
        return bool(self._email or self._webhook_url)

    def notify(self, *, subject: str, body: str, payload: Dict[str, Any]) -> Dict[str, bool]:
        sent = {"email": False, "webhook": False}
        if self._email:
            try:
                send_mail(self._runner, self._email, subject, body)
                sent["email"] = True
            except NotificationError as exc:
                self._log.warning("Email notification failed: %s", exc)
        if self._webhook_url:
            try:
                with WebhookClient(self._webhook_url, client=self._http_client) as wh:
                    wh.post(payload)
                sent["webhook"] = True
            except NotificationError as exc:
                self._log.warning("Webhook notification failed: %s", exc)
        return sent


__all__ = [
    "Notifier",
    "WebhookClient",
    "send_mail",
    "NotificationError",
    "WebhookError",
    "MailError",
]
