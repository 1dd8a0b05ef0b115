"""Delivery of notifications to the external notification renderer.

Sends each notification as an HTTP POST with an HMAC-SHA256 signature
header so the renderer can verify the sender.  Retries with exponential
backoff.

INVARIANT: Delivery is fire-and-forget.  Failures are logged and reported
in the return value, never raised.
"""

from __future__ import annotations

import asyncio
import hashlib
import hmac
import logging
from typing import Any

import httpx

from billing_api.services.notifications import Notification

logger = logging.getLogger(__name__)

_TIMEOUT_SECONDS = 10.0
_MAX_RETRIES = 3
_BACKOFF_BASE = 1.0  # seconds: 1, 2, 4


class NotificationDispatcher:
    """POST notifications to a single configured endpoint.

    Parameters
    ----------
    endpoint_url:
        URL of the notification service.
    signing_secret:
        Shared secret for the ``X-Billing-Signature`` header.  No header
        value is sent when empty.
    http_client:
        Optional ``httpx.AsyncClient`` for testing.  A default client is
        created if not provided.
    max_retries:
        Delivery attempts per notification.
    backoff_base:
        First backoff delay in seconds; doubles on each retry.
    """

    def __init__(
        self,
        endpoint_url: str,
        signing_secret: str = "",
        *,
        http_client: httpx.AsyncClient | None = None,
        timeout_seconds: float = _TIMEOUT_SECONDS,
        max_retries: int = _MAX_RETRIES,
        backoff_base: float = _BACKOFF_BASE,
    ) -> None:
        self._url = endpoint_url
        self._secret = signing_secret
        self._client = http_client or httpx.AsyncClient(timeout=timeout_seconds)
        self._owns_client = http_client is None
        self._max_retries = max(1, max_retries)
        self._backoff_base = backoff_base

    async def close(self) -> None:
        """Close the HTTP client if we own it."""
        if self._owns_client:
            await self._client.aclose()

    async def deliver(self, notification: Notification) -> dict[str, Any]:
        """Attempt delivery with retries and exponential backoff.

        Returns
        -------
        dict[str, Any]
            ``{"status": "delivered" | "failed", "attempts": ..., ...}``.
        """
        body = notification.model_dump_json()
        headers = {
            "Content-Type": "application/json",
            "X-Billing-Signature": self.sign(body, self._secret),
            "X-Billing-Notification": notification.kind.value,
            "X-Billing-Delivery": notification.correlation_id,
        }

        last_error: str | None = None
        for attempt in range(1, self._max_retries + 1):
            try:
                response = await self._client.post(self._url, content=body, headers=headers)

                if 200 <= response.status_code < 300:
                    logger.info(
                        "Notification delivered: kind=%s status=%d attempt=%d",
                        notification.kind.value,
                        response.status_code,
                        attempt,
                    )
                    return {
                        "status": "delivered",
                        "status_code": response.status_code,
                        "attempts": attempt,
                    }

                last_error = f"HTTP {response.status_code}"
                logger.warning(
                    "Notification delivery failed: kind=%s status=%d attempt=%d/%d",
                    notification.kind.value,
                    response.status_code,
                    attempt,
                    self._max_retries,
                )

            except httpx.TimeoutException:
                last_error = "timeout"
                logger.warning(
                    "Notification delivery timeout: kind=%s attempt=%d/%d",
                    notification.kind.value,
                    attempt,
                    self._max_retries,
                )
            except httpx.RequestError as exc:
                last_error = str(exc)
                logger.warning(
                    "Notification delivery error: kind=%s error=%s attempt=%d/%d",
                    notification.kind.value,
                    exc,
                    attempt,
                    self._max_retries,
                )

            if attempt < self._max_retries:
                await asyncio.sleep(self._backoff_base * (2 ** (attempt - 1)))

        logger.error(
            "Notification delivery exhausted retries: kind=%s to=%s error=%s",
            notification.kind.value,
            notification.recipient_ref,
            last_error,
        )
        return {"status": "failed", "error": last_error, "attempts": self._max_retries}

    @staticmethod
    def sign(body: str, secret: str) -> str:
        """Compute the HMAC-SHA256 signature of the request body."""
        if not secret:
            return ""
        return hmac.new(secret.encode("utf-8"), body.encode("utf-8"), hashlib.sha256).hexdigest()

    @staticmethod
    def verify_signature(body: str, secret: str, signature: str) -> bool:
        """Verify a signature (for use by the receiving service)."""
        expected = NotificationDispatcher.sign(body, secret)
        return hmac.compare_digest(expected, signature)
