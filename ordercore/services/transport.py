"""
Notification transports

Deliver events to the realtime gateway that fans them out to connected
clients subscribed to ``user:<id>`` / ``role:<ROLE>`` channels.
"""
from concurrent.futures import ThreadPoolExecutor
from typing import List, Optional, Protocol
import httpx
import logging

from ordercore.models.notification import NotificationEvent

logger = logging.getLogger(__name__)


class NotificationTransport(Protocol):
    def deliver(self, event: NotificationEvent, channels: List[str]) -> None:
        ...


class LoggingTransport:
    """Used when no gateway is configured; events only reach the log"""

    def deliver(self, event: NotificationEvent, channels: List[str]) -> None:
        logger.info(f"Notification {event.type.value} for {', '.join(channels)}: {event.message}")


class HttpNotificationTransport:
    """
    POST events to the notification gateway

    Requests run on a background worker so the publisher never waits on
    delivery; a failed delivery is logged and dropped.
    """

    def __init__(self, gateway_url: str, timeout: float = 5.0, client: Optional[httpx.Client] = None):
        self.gateway_url = gateway_url.rstrip("/")
        self.client = client or httpx.Client(timeout=timeout)
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="notify")

        # Statistics
        self.notifications_sent = 0
        self.notifications_failed = 0

    def deliver(self, event: NotificationEvent, channels: List[str]) -> None:
        payload = {
            "channels": channels,
            "event": event.model_dump(mode="json", exclude={"dedup_key"}),
        }
        self._executor.submit(self._send, payload)

    def _send(self, payload: dict) -> bool:
        url = f"{self.gateway_url}/api/v1/notifications"
        try:
            response = self.client.post(url, json=payload)
            response.raise_for_status()
        except httpx.HTTPError as e:
            self.notifications_failed += 1
            logger.error(f"Failed to deliver notification {payload['event']['type']}: {e}")
            return False

        self.notifications_sent += 1
        logger.debug(f"Notification {payload['event']['type']} delivered to {len(payload['channels'])} channels")
        return True

    def close(self):
        """Flush pending deliveries and close the HTTP client"""
        self._executor.shutdown(wait=True)
        self.client.close()
