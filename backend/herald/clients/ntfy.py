"""
ntfy transport - one topic per user.
"""
from loguru import logger

from herald.clients.base import BaseTransport
from herald.schemas.notification import NotificationPayload

# ntfy priorities run 1 (min) to 5 (max)
NTFY_PRIORITY_DEFAULT = "3"
NTFY_PRIORITY_URGENT = "5"


class NtfyTransport(BaseTransport):
    """Publishes to ``{server}/{topic_prefix}-{user_id}``."""

    def __init__(self, url: str = "https://ntfy.sh", topic_prefix: str = "herald", timeout_seconds: float = 10.0):
        super().__init__("ntfy", url or "https://ntfy.sh", timeout_seconds)
        self.topic_prefix = topic_prefix

    @property
    def transport_type(self) -> str:
        return "ntfy"

    def topic_for(self, user_id: str) -> str:
        return f"{self.topic_prefix}-{user_id}"

    async def send(self, user_id: str, payload: NotificationPayload):
        headers = {
            "Title": payload.title,
            "Priority": NTFY_PRIORITY_URGENT if payload.require_interaction else NTFY_PRIORITY_DEFAULT,
        }
        if payload.tag:
            headers["Tags"] = payload.tag
        if payload.data.action_url:
            headers["Click"] = payload.data.action_url
        if payload.icon:
            headers["Icon"] = payload.icon

        await self._post(f"{self.url}/{self.topic_for(user_id)}", data=payload.body, headers=headers)
        logger.debug(f"ntfy delivered '{payload.title}' to topic {self.topic_for(user_id)}")
