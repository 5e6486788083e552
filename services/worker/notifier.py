from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx

from job_manager.config import Settings
from job_manager.exceptions import PermanentExecutionError, TransientExecutionError

log = logging.getLogger("worker.notifier")

CONTENT_TYPES = ("text/plain", "text/html")

# Provider statuses that will not get better on retry (bad request, bad key, bad recipient, ...)
PERMANENT_STATUSES = {400, 401, 403, 404, 413, 422}


@dataclass
class Notification:
    to: str
    subject: str
    body: str
    content_type: str = "text/html"


@dataclass
class SendResult:
    status_code: int
    message_id: Optional[str] = None


def build_payload(n: Notification, sender: str) -> Dict[str, Any]:
    return {
        "personalizations": [{"to": [{"email": n.to}]}],
        "from": {"email": sender},
        "subject": n.subject,
        "content": [{"type": n.content_type, "value": n.body}],
    }


class Notifier:
    """
    Sends one email per call through a transactional-email HTTP API.

    No retries happen here: transient problems raise
    TransientExecutionError and the job queue decides when to try again.
    """

    def __init__(
        self,
        api_url: str,
        api_key: str,
        sender: str,
        timeout_s: float = 10.0,
        client: Optional[httpx.Client] = None,
    ) -> None:
        self.api_url = api_url
        self.api_key = api_key
        self.sender = sender
        self.client = client or httpx.Client(timeout=timeout_s)

    @classmethod
    def from_settings(cls, settings: Settings, client: Optional[httpx.Client] = None) -> "Notifier":
        return cls(
            api_url=settings.email_api_url,
            api_key=settings.email_api_key,
            sender=settings.email_from,
            timeout_s=settings.email_timeout_s,
            client=client,
        )

    def send(self, to: str, subject: str, body: str, content_type: str = "text/html") -> SendResult:
        return self.deliver(Notification(to=to, subject=subject, body=body, content_type=content_type))

    def deliver(self, n: Notification) -> SendResult:
        if not n.to or "@" not in n.to:
            raise PermanentExecutionError(f"invalid recipient: {n.to!r}")
        if n.content_type not in CONTENT_TYPES:
            raise PermanentExecutionError(f"unsupported content type: {n.content_type!r}")

        try:
            resp = self.client.post(
                self.api_url,
                json=build_payload(n, self.sender),
                headers={"Authorization": f"Bearer {self.api_key}"},
            )
        except httpx.TransportError as exc:
            raise TransientExecutionError(f"email provider unreachable: {exc!r}") from exc

        if resp.is_success:
            result = SendResult(status_code=resp.status_code, message_id=self._message_id(resp))
            log.info("email sent to %s (status=%s id=%s)", n.to, result.status_code, result.message_id)
            return result

        detail = f"email provider returned {resp.status_code}: {resp.text[:200]}"
        if resp.status_code in PERMANENT_STATUSES:
            raise PermanentExecutionError(detail)
        raise TransientExecutionError(detail)

    @staticmethod
    def _message_id(resp: httpx.Response) -> Optional[str]:
        mid = resp.headers.get("X-Message-Id")
        if mid:
            return mid
        if not resp.content:
            return None
        try:
            data = resp.json()
        except ValueError:
            return None
        return data.get("id") if isinstance(data, dict) else None
