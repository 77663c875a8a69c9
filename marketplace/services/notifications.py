"""Lifecycle notification dispatch.

Supports two backends:
- Signed JSON webhook POST to a notification service (production)
- Log-only (development / testing)

Delivery content and fan-out (push, in-app) belong to the downstream
service; this module only reports that an event happened. A failed delivery
is logged and never blocks the transition that produced it.
"""

import hashlib
import hmac
import json
import logging
import uuid
from datetime import UTC, datetime
from typing import Protocol

import httpx

from marketplace.config import settings

logger = logging.getLogger(__name__)


class Notifier(Protocol):
    async def notify(
        self,
        event_type: str,
        job_id: uuid.UUID,
        recipient_id: uuid.UUID,
        payload: dict,
    ) -> None: ...


def sign_webhook_payload(secret: str, timestamp: str, body: str) -> str:
    """Generate HMAC-SHA256 signature for webhook payload."""
    message = f"{timestamp}.{body}"
    return hmac.new(secret.encode(), message.encode(), hashlib.sha256).hexdigest()


def build_event(event_type: str, job_id: uuid.UUID, recipient_id: uuid.UUID, payload: dict) -> dict:
    return {
        "event": event_type,
        "job_id": str(job_id),
        "recipient_id": str(recipient_id),
        "timestamp": datetime.now(UTC).isoformat(),
        "data": payload,
    }


class LogNotifier:
    """Development notifier: logs events instead of sending."""

    async def notify(
        self,
        event_type: str,
        job_id: uuid.UUID,
        recipient_id: uuid.UUID,
        payload: dict,
    ) -> None:
        logger.info("NOTIFY %s job=%s to=%s %s", event_type, job_id, recipient_id, payload)


class WebhookNotifier:
    """Production notifier: POSTs signed events to the notification service."""

    def __init__(
        self,
        url: str,
        secret: str,
        timeout: int = 10,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.url = url
        self.secret = secret
        self.timeout = timeout
        self._transport = transport

    async def notify(
        self,
        event_type: str,
        job_id: uuid.UUID,
        recipient_id: uuid.UUID,
        payload: dict,
    ) -> None:
        body = json.dumps(build_event(event_type, job_id, recipient_id, payload), default=str)
        timestamp = datetime.now(UTC).isoformat()
        headers = {
            "Content-Type": "application/json",
            "X-Webhook-Timestamp": timestamp,
            "X-Webhook-Signature": sign_webhook_payload(self.secret, timestamp, body),
        }
        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            resp = await client.post(self.url, content=body, headers=headers)
        resp.raise_for_status()


async def dispatch(
    notifier: Notifier,
    event_type: str,
    job_id: uuid.UUID,
    recipient_id: uuid.UUID | None,
    payload: dict | None = None,
) -> None:
    """Fire a notification, swallowing and logging any delivery failure."""
    if recipient_id is None:
        return
    try:
        await notifier.notify(event_type, job_id, recipient_id, payload or {})
    except Exception:
        logger.exception("Notification %s for job %s to %s failed", event_type, job_id, recipient_id)


def get_notifier() -> Notifier:
    if settings.notification_backend == "webhook":
        return WebhookNotifier(
            url=settings.notification_webhook_url,
            secret=settings.notification_webhook_secret,
            timeout=settings.notification_timeout_seconds,
        )
    return LogNotifier()
