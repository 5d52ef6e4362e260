"""
Generic JSON webhook transport.
"""
from typing import Dict, Optional
import aiohttp
from loguru import logger

from herald.clients.base import BaseTransport
from herald.schemas.notification import NotificationPayload
from herald.utils.timeutil import utcnow


class WebhookTransport(BaseTransport):
    """POSTs each notification as JSON to a single endpoint."""

    def __init__(self, url: str, headers: Optional[Dict[str, str]] = None, timeout_seconds: float = 10.0):
        super().__init__("Webhook", url, timeout_seconds)
        self.headers = headers or {}

    @property
    def transport_type(self) -> str:
        return "webhook"

    async def send(self, user_id: str, payload: NotificationPayload):
        body = {
            "user_id": user_id,
            "timestamp": utcnow().isoformat(),
            "notification": payload.model_dump(mode="json", exclude_none=True),
        }
        await self._post(self.url, json=body, headers=self.headers)
        logger.debug(f"Webhook delivered '{payload.title}' to user {user_id}")

    async def test_connection(self) -> bool:
        try:
            async with self.session.head(self.url, headers=self.headers) as response:
                return response.status < 500
        except (aiohttp.ClientError, TimeoutError) as e:
            logger.warning(f"Webhook endpoint unreachable: {e}")
            return False
