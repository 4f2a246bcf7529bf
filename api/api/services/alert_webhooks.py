"""Alert delivery over HTTP webhooks.

Alerts of type ``webhook`` are POSTed as JSON to their ``webhook_url``
with an ``X-Metering-Signature`` header (hex HMAC-SHA256 of the body).
Other alert types fall through to the logging notifier.

Delivery is fire-and-forget: failures are logged after the final retry
and never propagate into alert evaluation, which has already recorded
``last_triggered_at``.
"""

from __future__ import annotations

import asyncio
import hashlib
import hmac
import json
import logging
from typing import Any

import httpx
from metering_core.metering.alerts import AlertNotifier, LoggingNotifier
from metering_core.models.alerts import AlertType, FiredAlert

logger = logging.getLogger(__name__)

_TIMEOUT_SECONDS = 5.0
_MAX_RETRIES = 3


def alert_payload(fired: FiredAlert) -> dict[str, Any]:
    alert = fired.alert
    return {
        "event": "usage.alert.fired",
        "alert_id": alert.alert_id,
        "workspace_id": alert.workspace_id,
        "resource_type": alert.resource_type.value,
        "threshold": alert.threshold,
        "current_usage": fired.current_usage,
        "fired_at": fired.fired_at.isoformat(),
    }


class WebhookAlertNotifier:
    """Deliver webhook alerts, delegating other channels to *fallback*.

    Parameters
    ----------
    http_client:
        Optional ``httpx.AsyncClient`` (tests pass one with a mock
        transport).  A default client is created if not provided.
    secret:
        Signing key for ``X-Metering-Signature``; unsigned when empty.
    backoff_base:
        First retry delay in seconds, doubled per attempt.
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient | None = None,
        secret: str = "",
        fallback: AlertNotifier | None = None,
        backoff_base: float = 1.0,
    ) -> None:
        self._client = http_client or httpx.AsyncClient(timeout=_TIMEOUT_SECONDS)
        self._owns_client = http_client is None
        self._secret = secret
        self._fallback = fallback or LoggingNotifier()
        self._backoff_base = backoff_base

    async def close(self) -> None:
        """Close the HTTP client if we own it."""
        if self._owns_client:
            await self._client.aclose()

    def _sign(self, body: str) -> str:
        return hmac.new(self._secret.encode("utf-8"), body.encode("utf-8"), hashlib.sha256).hexdigest()

    async def notify(self, fired: FiredAlert) -> None:
        alert = fired.alert
        if alert.alert_type != AlertType.WEBHOOK or not alert.webhook_url:
            await self._fallback.notify(fired)
            return
        await self.deliver(alert.webhook_url, alert_payload(fired))

    async def deliver(self, url: str, payload: dict[str, Any]) -> bool:
        """POST *payload* to *url* with retries; ``True`` on a 2xx response."""
        body = json.dumps(payload, sort_keys=True, separators=(",", ":"))
        headers = {"Content-Type": "application/json", "X-Metering-Event": payload["event"]}
        if self._secret:
            headers["X-Metering-Signature"] = self._sign(body)

        last_error = ""
        for attempt in range(1, _MAX_RETRIES + 1):
            try:
                response = await self._client.post(url, content=body, headers=headers)
            except httpx.HTTPError as exc:
                last_error = str(exc)
            else:
                if response.is_success:
                    logger.info(
                        "Alert webhook delivered: url=%s status=%d attempt=%d",
                        url,
                        response.status_code,
                        attempt,
                        extra={"alert": payload},
                    )
                    return True
                last_error = f"HTTP {response.status_code}"

            logger.warning("Alert webhook attempt %d/%d failed: url=%s error=%s", attempt, _MAX_RETRIES, url, last_error)
            if attempt < _MAX_RETRIES:
                await asyncio.sleep(self._backoff_base * (2 ** (attempt - 1)))

        logger.error("Alert webhook delivery abandoned: url=%s error=%s", url, last_error, extra={"alert": payload})
        return False
