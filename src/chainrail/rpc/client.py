"""JSON-RPC 2.0 and REST transport over a shared httpx client.

Endpoint selection is not done here: callers pass the URL to use, normally
obtained from EndpointRegistry.call_with_failover().
"""

import itertools
import logging
from typing import Any, Optional

import httpx

from chainrail.errors import EndpointError, RpcError, RpcTimeout

logger = logging.getLogger(__name__)


class JsonRpcClient:
    """Thin JSON-RPC client with a fixed per-call timeout.

    Error mapping:
    - httpx.TimeoutException -> RpcTimeout
    - other transport errors, HTTP 5xx, undecodable bodies -> EndpointError
    - JSON-RPC ``error`` object -> RpcError
    """

    def __init__(
        self,
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.timeout = timeout
        self._client = client
        self._owns_client = client is None
        self._ids = itertools.count(1)

    def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(self.timeout))
        return self._client

    async def call(self, url: str, method: str, params: Optional[list] = None) -> Any:
        """Call a JSON-RPC method on one endpoint and return its ``result``."""
        payload = {
            "jsonrpc": "2.0",
            "id": next(self._ids),
            "method": method,
            "params": params if params is not None else [],
        }
        response = await self._send("POST", url, json=payload)
        data = self._decode(response, url)

        # bitcoind answers RPC errors with HTTP 500 and an error body
        if isinstance(data, dict) and data.get("error"):
            error = data["error"]
            if isinstance(error, dict):
                raise RpcError(error.get("code"), str(error.get("message", error)), endpoint=url)
            raise RpcError(None, str(error), endpoint=url)

        if response.status_code >= 500:
            raise EndpointError(f"HTTP {response.status_code} from {url}", endpoint=url)
        if not isinstance(data, dict) or "result" not in data:
            raise EndpointError(f"Malformed JSON-RPC response from {url}", endpoint=url)

        return data["result"]

    async def get_json(self, url: str) -> Any:
        """GET a REST resource. Returns None on 404."""
        response = await self._send("GET", url)
        if response.status_code == 404:
            return None
        if response.status_code >= 400:
            raise EndpointError(f"HTTP {response.status_code} from {url}", endpoint=url)
        return self._decode(response, url)

    async def _send(self, method: str, url: str, **kwargs) -> httpx.Response:
        client = self._get_client()
        try:
            return await client.request(method, url, timeout=self.timeout, **kwargs)
        except httpx.TimeoutException as e:
            logger.debug(f"Timeout after {self.timeout}s calling {url}")
            raise RpcTimeout(f"Timeout after {self.timeout}s calling {url}", endpoint=url) from e
        except httpx.HTTPError as e:
            logger.debug(f"Transport error calling {url}: {e}")
            raise EndpointError(f"Transport error calling {url}: {e}", endpoint=url) from e

    @staticmethod
    def _decode(response: httpx.Response, url: str) -> Any:
        try:
            return response.json()
        except ValueError as e:
            raise EndpointError(
                f"Undecodable response from {url} (HTTP {response.status_code})",
                endpoint=url,
            ) from e

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client is not None and self._owns_client:
            await self._client.aclose()
        self._client = None
