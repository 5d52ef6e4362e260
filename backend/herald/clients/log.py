"""
Development transport that only logs deliveries.
"""
from loguru import logger

from herald.clients.base import BaseTransport
from herald.schemas.notification import NotificationPayload


class LogTransport(BaseTransport):
    def __init__(self):
        super().__init__("Log")
        self.delivered = 0

    @property
    def transport_type(self) -> str:
        return "log"

    async def send(self, user_id: str, payload: NotificationPayload):
        self.delivered += 1
        logger.info(f"[deliver] user={user_id} type={payload.type} tag={payload.tag} title={payload.title!r}")
