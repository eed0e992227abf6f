"""Webhook alert sink (Slack, PagerDuty Events, generic JSON receivers)."""

import logging
from typing import Optional

import httpx

from ortenberg.alerts.base import Alert, AlertSink

logger = logging.getLogger(__name__)


class WebhookAlertSink(AlertSink):
    """POSTs alerts as JSON to a configured URL."""

    def __init__(
        self,
        url: str,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = 10.0,
    ):
        self.url = url
        self._client = http_client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = http_client is None

    async def send_alert(self, alert: Alert) -> bool:
        payload = alert.to_dict()
        # Slack incoming webhooks render the "text" field
        payload["text"] = f":rotating_light: {alert.title}"

        try:
            response = await self._client.post(self.url, json=payload)
            if response.status_code >= 400:
                logger.error(
                    f"Alert webhook rejected '{alert.title}': "
                    f"{response.status_code} - {response.text}"
                )
                return False
            return True
        except httpx.HTTPError as e:
            logger.error(f"Failed to deliver alert '{alert.title}' to webhook: {e}")
            return False

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()
