"""
Base delivery transport interface.
"""
from abc import ABC, abstractmethod
from typing import Dict, Optional
import aiohttp
from loguru import logger

from herald.schemas.notification import NotificationPayload
from herald.utils.errors import TransportError


class BaseTransport(ABC):
    """Abstract base class for delivery transports.

    ``send`` returns normally on success and raises TransportError on any
    failure. Retrying is the pipeline's job, so transports make one attempt.
    """

    def __init__(self, name: str, url: str = "", timeout_seconds: float = 10.0):
        self.name = name
        self.url = url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self._session: Optional[aiohttp.ClientSession] = None

    @property
    def session(self) -> aiohttp.ClientSession:
        """Get or create aiohttp session."""
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout_seconds)
            )
        return self._session

    async def close(self):
        """Close the HTTP session."""
        if self._session and not self._session.closed:
            await self._session.close()

    async def _post(
        self,
        url: str,
        json: Optional[Dict] = None,
        data: Optional[str] = None,
        headers: Optional[Dict[str, str]] = None,
    ):
        """POST once, raising TransportError on a non-2xx status or connection failure."""
        try:
            async with self.session.post(url, json=json, data=data, headers=headers) as response:
                if 200 <= response.status < 300:
                    return
                response_text = await response.text()
                raise TransportError(f"{self.name}: HTTP {response.status}: {response_text[:200]}")
        except (aiohttp.ClientError, TimeoutError) as e:
            logger.debug(f"{self.name} request failed: {type(e).__name__}: {e}")
            raise TransportError(f"{self.name}: {type(e).__name__}: {e}") from e

    @abstractmethod
    async def send(self, user_id: str, payload: NotificationPayload):
        """Deliver one payload to one user."""
        pass

    async def test_connection(self) -> bool:
        """Whether the transport looks reachable. Defaults to True."""
        return True

    @property
    @abstractmethod
    def transport_type(self) -> str:
        """The type identifier for this transport."""
        pass
