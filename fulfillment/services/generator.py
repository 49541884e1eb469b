import asyncio
import logging
from typing import Optional

import httpx

from fulfillment.core.config import settings
from fulfillment.core.exceptions import GenerationError
from fulfillment.models.order import Order

logger = logging.getLogger(__name__)


class ReportGeneratorClient:
    """HTTP client for the external report generator.

    Every way an attempt can go wrong (timeout, transport error, non-2xx
    status, a body that is not a report) surfaces as ``GenerationError``.
    """

    def __init__(self, url: str, api_key: str = "", timeout_seconds: float = 120.0) -> None:
        self.url = url
        self.api_key = api_key
        self.timeout_seconds = timeout_seconds
        self._client: Optional[httpx.AsyncClient] = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            headers = {"Content-Type": "application/json"}
            if self.api_key:
                headers["Authorization"] = f"Bearer {self.api_key}"
            self._client = httpx.AsyncClient(timeout=self.timeout_seconds, headers=headers)
        return self._client

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    async def generate(self, order: Order) -> dict:
        body = {
            "petData": order.profile(),
            "reportId": order.id,
            "language": order.language or "en",
            "occasionMode": order.occasion_mode or "discover",
        }

        try:
            response = await asyncio.wait_for(
                self._get_client().post(self.url, json=body),
                timeout=self.timeout_seconds
            )
        except (asyncio.TimeoutError, httpx.TimeoutException) as e:
            raise GenerationError(f"Generator timed out after {self.timeout_seconds:g}s") from e
        except httpx.HTTPError as e:
            raise GenerationError(f"Generator request failed: {type(e).__name__}: {e}") from e

        if not response.is_success:
            raise GenerationError(
                f"Generator returned {response.status_code}: {response.text[:200]}"
            )

        try:
            data = response.json()
        except ValueError as e:
            raise GenerationError("Generator returned malformed output: body is not JSON") from e

        if not isinstance(data, dict):
            raise GenerationError("Generator returned malformed output: expected an object")
        if data.get("error"):
            raise GenerationError(f"Generator reported an error: {str(data['error'])[:200]}")

        report = data.get("report")
        if not isinstance(report, dict) or not report:
            raise GenerationError("Generator returned malformed output: missing report")

        logger.debug(f"Generator returned report for order {order.id}")
        return report


generator_client = ReportGeneratorClient(
    settings.generator_url,
    api_key=settings.generator_api_key,
    timeout_seconds=settings.generator_timeout_seconds
)
