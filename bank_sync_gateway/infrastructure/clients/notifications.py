"""Notification event client with exponential backoff retry logic"""

import asyncio
import hashlib
import json
import logging
from typing import Any, Dict

import httpx

from bank_sync_gateway.config import settings
from bank_sync_gateway.infrastructure.observability.metrics import (
    notification_failure_counter,
    notification_latency_histogram,
)


def _is_retryable(error: Exception) -> bool:
    if isinstance(error, httpx.HTTPStatusError):
        status = error.response.status_code
        return status >= 500 or status == 429
    return isinstance(error, httpx.RequestError)


def idempotency_key(event_type: str, payload: Dict[str, Any]) -> str:
    """Stable per event body, so the receiver can drop redelivered copies"""
    body = json.dumps({"event": event_type, **payload}, sort_keys=True, default=str)
    return hashlib.sha256(body.encode()).hexdigest()


class NotificationClient:
    """Client for emitting connection events to the notification service"""

    def __init__(
        self,
        webhook_url: str | None = None,
        max_retries: int | None = None,
        backoff_base: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.webhook_url = webhook_url or settings.notification_webhook_url
        self.max_retries = max_retries or settings.notification_max_retries
        self.backoff_base = settings.notification_backoff_base if backoff_base is None else backoff_base
        self._transport = transport

    async def send_event(self, event_type: str, payload: Dict[str, Any]) -> None:
        """
        Deliver a notification event.

        Retry strategy:
        - Exponential backoff: base, 2*base, 4*base ...
        - Retries 5xx, 429 and network failures; other 4xx fail at once
        - Every attempt carries the same Idempotency-Key

        The task queue retries the whole delivery once these attempts run out,
        so the user/channel fan-out stays at-least-once.
        """
        headers = {"Idempotency-Key": idempotency_key(event_type, payload)}
        body = {"event": event_type, **payload}

        async with httpx.AsyncClient(transport=self._transport, timeout=settings.http_timeout_seconds) as client:
            for attempt in range(1, self.max_retries + 1):
                try:
                    with notification_latency_histogram.time():
                        response = await client.post(self.webhook_url, json=body, headers=headers)
                        response.raise_for_status()
                    return
                except (httpx.HTTPStatusError, httpx.RequestError) as e:
                    notification_failure_counter.inc()
                    if attempt >= self.max_retries or not _is_retryable(e):
                        raise
                    logging.warning(
                        f"Notification delivery failed, retrying: {e}",
                        extra={"event_type": event_type, "attempt": attempt},
                    )
                    await asyncio.sleep(self.backoff_base * (2 ** (attempt - 1)))
