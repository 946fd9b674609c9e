"""
Shared async HTTP plumbing for the remote stores.
"""

import logging
from typing import Any, Optional

import httpx

from errors import BackendError

logger = logging.getLogger(__name__)


class RestClient:
    """Thin wrapper around httpx.AsyncClient that raises BackendError."""

    def __init__(
        self,
        api_base_url: str,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize the client.

        Args:
            api_base_url: Base URL of the remote API
            timeout: Request timeout in seconds
            transport: Optional transport (used by tests)
        """
        self.api_base_url = api_base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    def _get_headers(self) -> dict[str, str]:
        """Get headers for API requests."""
        return {"Content-Type": "application/json"}

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create async HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout, transport=self._transport)
        return self._client

    async def close(self):
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[dict[str, Any]] = None,
        json: Any = None,
        headers: Optional[dict[str, str]] = None,
        allow_404: bool = False,
    ) -> Optional[httpx.Response]:
        """
        Send a request and check the status.

        Returns:
            The response, or None for a 404 when allow_404 is set

        Raises:
            BackendError: On network errors and non-2xx responses
        """
        client = await self._get_client()
        url = f"{self.api_base_url}{path}"
        request_headers = {**self._get_headers(), **(headers or {})}

        try:
            response = await client.request(method, url, params=params, json=json, headers=request_headers)
        except httpx.RequestError as e:
            logger.warning("%s %s failed: %s", method, url, e)
            raise BackendError(f"Network error: {e}") from e

        logger.debug("%s %s -> %s", method, url, response.status_code)

        if response.status_code == 404 and allow_404:
            return None
        if response.status_code >= 400:
            detail = ""
            try:
                error_data = response.json()
                if isinstance(error_data, dict):
                    detail = error_data.get("message") or error_data.get("detail") or ""
            except ValueError:
                detail = response.text[:200]
            logger.warning("%s %s returned %s: %s", method, url, response.status_code, detail)
            raise BackendError(
                f"{method} {path} failed: {response.status_code} {detail}".rstrip(),
                status_code=response.status_code,
            )
        return response
