"""Notification senders.

Delivery mechanics are out of scope for the engine; it only needs a ``send``
that either reports a result or raises ``TransientInfraError`` when retrying
makes sense.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Protocol

import requests

from stage_workflow_orchestrator.orchestrator.errors import TransientInfraError

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class NotificationResult:
    recipient: str
    delivered: bool
    detail: str = ""


class NotificationSender(Protocol):
    def send(
        self,
        recipient: str,
        subject: str,
        body: str,
        *,
        idempotency_key: str | None = None,
    ) -> NotificationResult: ...


class LoggingNotificationSender:
    """Writes notifications to the log. The default when no webhook is configured."""

    def send(
        self,
        recipient: str,
        subject: str,
        body: str,
        *,
        idempotency_key: str | None = None,
    ) -> NotificationResult:
        logger.info(
            "Notification",
            extra={
                "recipient": recipient,
                "subject": subject,
                "body": body,
                "idempotency_key": idempotency_key,
            },
        )
        return NotificationResult(recipient=recipient, delivered=True, detail="logged")


class WebhookNotificationSender:
    """POST each notification as JSON to a webhook.

    5xx, 429 and connection problems raise ``TransientInfraError`` so the
    executor retries them. Other 4xx responses are permanent and come back as an
    undelivered result.
    """

    def __init__(
        self,
        url: str,
        *,
        timeout: float = 10.0,
        session: requests.Session | None = None,
    ) -> None:
        self._url = url
        self._timeout = timeout
        self._session = session or requests.Session()
        self._session.headers.update({"Content-Type": "application/json"})

    def close(self) -> None:
        self._session.close()

    def send(
        self,
        recipient: str,
        subject: str,
        body: str,
        *,
        idempotency_key: str | None = None,
    ) -> NotificationResult:
        payload = {"recipient": recipient, "subject": subject, "body": body}
        headers = {"Idempotency-Key": idempotency_key} if idempotency_key else None
        try:
            resp = self._session.post(
                self._url, json=payload, headers=headers, timeout=self._timeout
            )
        except (requests.ConnectionError, requests.Timeout) as e:
            raise TransientInfraError(f"Webhook unreachable: {e}") from e

        if resp.status_code == 429 or resp.status_code >= 500:
            raise TransientInfraError(f"Webhook returned HTTP {resp.status_code}")
        if resp.status_code >= 400:
            logger.warning(
                "Webhook rejected notification",
                extra={"recipient": recipient, "status_code": resp.status_code},
            )
            return NotificationResult(
                recipient=recipient, delivered=False, detail=f"HTTP {resp.status_code}"
            )
        return NotificationResult(recipient=recipient, delivered=True)
