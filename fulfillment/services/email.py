import logging
from typing import Optional

import httpx

from fulfillment.core.config import settings
from fulfillment.core.exceptions import NotificationError

logger = logging.getLogger(__name__)


class EmailClient:
    def __init__(self, api_url: str, api_key: str, sender: str, timeout_seconds: float = 15.0) -> None:
        self.api_url = api_url
        self.api_key = api_key
        self.sender = sender
        self.timeout_seconds = timeout_seconds
        self._client: Optional[httpx.AsyncClient] = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=self.timeout_seconds,
                headers={"Authorization": f"Bearer {self.api_key}"}
            )
        return self._client

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    async def send(self, to: str, subject: str, html: str) -> None:
        if not self.api_key:
            raise NotificationError("Email provider is not configured")

        try:
            response = await self._get_client().post(
                self.api_url,
                json={"from": self.sender, "to": [to], "subject": subject, "html": html}
            )
        except httpx.HTTPError as e:
            raise NotificationError(f"Email request failed: {type(e).__name__}: {e}") from e

        if not response.is_success:
            raise NotificationError(f"Email provider returned {response.status_code}: {response.text[:200]}")

        logger.info(f"Email accepted by provider for {to}")


email_client = EmailClient(
    settings.email_api_url,
    settings.email_api_key,
    settings.email_from,
    timeout_seconds=settings.email_timeout_seconds
)
