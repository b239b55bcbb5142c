"""Generic JSON webhook dispatcher."""

import logging
from typing import Optional

import httpx

from patchwatch.config import settings
from patchwatch.notify.events import NotificationDispatcher, NotificationEvent

logger = logging.getLogger(__name__)


class WebhookDispatcher(NotificationDispatcher):
    """POSTs each event as JSON to a webhook URL."""

    def __init__(
        self,
        webhook_url: str,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = settings.notification_timeout_seconds,
    ):
        if not webhook_url:
            raise ValueError("Webhook URL not configured")
        self.webhook_url = webhook_url
        self.timeout = timeout
        self._http_client = client
        self._owns_client = client is None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self.timeout)
        return self._http_client

    async def close(self):
        if self._http_client and self._owns_client:
            await self._http_client.aclose()
        self._http_client = None

    async def dispatch(self, event: NotificationEvent) -> bool:
        """
        Send an event to the webhook.

        Args:
            event: Event to deliver

        Returns:
            True if the webhook accepted it, False otherwise
        """
        try:
            client = await self._get_client()
            response = await client.post(self.webhook_url, json=event.to_payload())
        except httpx.HTTPError as e:
            logger.error(f"Webhook delivery failed for {event.kind} ({event.entity_id}): {e}")
            return False

        if response.status_code in (200, 201, 202, 204):
            logger.debug(f"Webhook accepted {event.kind} for {event.entity_id}")
            return True

        logger.warning(f"Webhook rejected {event.kind}: {response.status_code} - {response.text[:200]}")
        return False
