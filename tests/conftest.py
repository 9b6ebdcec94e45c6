"""Pytest configuration and fixtures."""

import json
import os
from typing import Any, Callable, Optional, Union

import httpx
import pytest
import pytest_asyncio

# Set test environment
os.environ["ENVIRONMENT"] = "test"
os.environ["DEBUG"] = "false"
os.environ["ENCRYPTION_KEY"] = "test-encryption-secret"
os.environ["ENCRYPTION_SALT"] = "test-salt"

from chainrail.chains import ChainFamily
from chainrail.rpc import EndpointRegistry, EndpointSet, JsonRpcClient, make_probe


class RpcFault(Exception):
    """Raised by a result callable to answer with a JSON-RPC error object."""

    def __init__(self, code: int, message: str):
        super().__init__(message)
        self.code = code
        self.message = message


class FakeChain:
    """In-memory JSON-RPC / REST backend served through httpx.MockTransport.

    Results are registered per method, optionally per endpoint URL. A result
    may be a callable taking the params list; raising ``fault(code, message)``
    from it answers with a JSON-RPC error. URLs listed in ``down`` refuse
    connections.
    """

    def __init__(self):
        self.routes: dict[tuple[Optional[str], str], tuple[str, Any]] = {}
        self.rest: dict[str, tuple[int, Any]] = {}
        self.down: set[str] = set()
        self.calls: list[tuple[str, str, list]] = []
        self.requests: list[str] = []

    def result(self, method: str, value: Union[Any, Callable[[list], Any]], url: Optional[str] = None):
        self.routes[(url, method)] = ("result", value)

    def error(self, method: str, code: int, message: str, url: Optional[str] = None, status: int = 200):
        self.routes[(url, method)] = ("error", ({"code": code, "message": message}, status))

    def fault(self, code: int, message: str) -> RpcFault:
        return RpcFault(code, message)

    def get(self, url: str, body: Any, status: int = 200):
        self.rest[url] = (status, body)

    def calls_to(self, method: str, url: Optional[str] = None) -> list[tuple[str, str, list]]:
        return [c for c in self.calls if c[1] == method and (url is None or c[0] == url)]

    def handler(self, request: httpx.Request) -> httpx.Response:
        url = str(request.url)
        self.requests.append(url)
        if any(url.startswith(host) for host in self.down):
            raise httpx.ConnectError("Connection refused", request=request)

        if request.method == "GET":
            status, body = self.rest.get(url, (404, {"error": "not found"}))
            return httpx.Response(status, json=body)

        payload = json.loads(request.content)
        method, params = payload["method"], payload["params"]
        self.calls.append((url, method, params))

        route = self.routes.get((url, method)) or self.routes.get((None, method))
        envelope = {"jsonrpc": "2.0", "id": payload["id"]}
        if route is None:
            envelope["error"] = {"code": -32601, "message": f"Method not found: {method}"}
            return httpx.Response(200, json=envelope)

        kind, value = route
        if kind == "error":
            error, status = value
            envelope["error"] = error
            return httpx.Response(status, json=envelope)

        try:
            envelope["result"] = value(params) if callable(value) else value
        except RpcFault as fault:
            envelope["error"] = {"code": fault.code, "message": fault.message}
        return httpx.Response(200, json=envelope)


@pytest.fixture
def fake_chain() -> FakeChain:
    """Fresh fake chain backend."""
    return FakeChain()


@pytest_asyncio.fixture
async def rpc(fake_chain: FakeChain):
    """JSON-RPC client wired to the fake chain."""
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(fake_chain.handler))
    client = JsonRpcClient(timeout=1.0, client=http_client)
    yield client
    await http_client.aclose()


@pytest.fixture
def registry() -> EndpointRegistry:
    """Registry without a running background task."""
    return EndpointRegistry(health_ttl=30.0, check_interval=30.0)


@pytest.fixture
def add_chain(registry: EndpointRegistry, rpc: JsonRpcClient):
    """Register a chain's endpoints with the family probe."""

    def add(
        chain: str,
        family: ChainFamily,
        primary: str,
        fallbacks: tuple[str, ...] = (),
    ) -> EndpointSet:
        endpoint_set = EndpointSet(chain=chain, family=family, primary=primary, fallbacks=fallbacks)
        registry.register(endpoint_set, make_probe(family, rpc))
        return endpoint_set

    return add


@pytest.fixture(autouse=True)
def _reset_key_cache():
    """Each test derives the cipher key from the current environment."""
    from chainrail.config import get_settings
    from chainrail.crypto import reset_key_cache

    get_settings.cache_clear()
    reset_key_cache()
    yield
    get_settings.cache_clear()
    reset_key_cache()
