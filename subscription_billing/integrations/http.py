"""
Shared plumbing for JSON provider APIs called over httpx.

Transport errors and 5xx/429 responses are retried with exponential backoff;
anything still failing surfaces as UpstreamError.
"""
import time
from typing import Any, Dict, Optional

import httpx
import structlog
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from subscription_billing.core.exceptions import UpstreamError
from subscription_billing.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

DEFAULT_TIMEOUT = 30.0


class RetryableResponse(Exception):
    """A provider answered with a status worth retrying."""

    def __init__(self, response: httpx.Response):
        super().__init__(f"HTTP {response.status_code}")
        self.response = response


class ProviderAPI:
    """Base for small async JSON API clients."""

    provider = "provider"

    def __init__(self, base_url: str, http_client: Optional[httpx.AsyncClient] = None):
        self.base_url = base_url.rstrip("/")
        self._client = http_client
        self._owns_client = http_client is None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=DEFAULT_TIMEOUT)
        return self._client

    async def aclose(self) -> None:
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None

    async def request(
        self,
        operation: str,
        method: str,
        path: str,
        headers: Optional[Dict[str, str]] = None,
        json: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """
        Call the provider and decode a JSON object.

        Raises:
            UpstreamError: If the call keeps failing or returns an unusable body
        """
        start_time = time.time()
        try:
            response = await self._send(method, path, headers, json, params)
            response.raise_for_status()
            payload = response.json()
        except (httpx.HTTPError, RetryableResponse, ValueError) as e:
            metrics.record_provider_api_call(
                self.provider, operation, "error", time.time() - start_time
            )
            logger.error(
                "provider_api_error",
                provider=self.provider,
                operation=operation,
                error=str(e),
            )
            raise UpstreamError(
                f"{self.provider} {operation} failed: {e}",
                provider=self.provider,
                operation=operation,
            ) from e

        if not isinstance(payload, dict):
            raise UpstreamError(f"{self.provider} {operation} returned a non-object body")

        metrics.record_provider_api_call(
            self.provider, operation, "success", time.time() - start_time
        )
        return payload

    @retry(
        retry=retry_if_exception_type((httpx.TransportError, RetryableResponse)),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
        reraise=True,
    )
    async def _send(
        self,
        method: str,
        path: str,
        headers: Optional[Dict[str, str]],
        json: Optional[Dict[str, Any]],
        params: Optional[Dict[str, Any]],
    ) -> httpx.Response:
        response = await self.client.request(
            method,
            f"{self.base_url}/{path.lstrip('/')}",
            headers=headers,
            json=json,
            params=params,
        )
        if response.status_code >= 500 or response.status_code == 429:
            raise RetryableResponse(response)
        return response
