"""Async HTTP client used by the provider clients"""

import logging

import httpx

from ..providers.base import TransportError
from .auth import SignedRequest

logger = logging.getLogger(__name__)


class HTTPClient:
    """Thin httpx wrapper with a bounded timeout and transport error mapping"""

    def __init__(self, timeout: float = 30, client: httpx.AsyncClient | None = None):
        self.timeout = timeout
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def send(self, request: SignedRequest) -> httpx.Response:
        """Send a signed request; HTTP error statuses are returned, not raised"""
        try:
            response = await self._client.request(
                request.method,
                request.url,
                headers=request.headers,
                content=request.body or None,
                timeout=self.timeout,
            )
        except httpx.TimeoutException as e:
            raise TransportError(f"Request to {httpx.URL(request.url).host} timed out") from e
        except httpx.TransportError as e:
            raise TransportError(f"Request to {httpx.URL(request.url).host} failed: {e}") from e

        logger.debug(f"{request.method} {httpx.URL(request.url).host} -> HTTP {response.status_code}")
        return response

    async def aclose(self) -> None:
        await self._client.aclose()
