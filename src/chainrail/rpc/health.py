"""Endpoint health registry with lazy probing and bounded failover.

Each chain has one primary endpoint and an ordered list of fallbacks.
Selection flow:
1. Return the current endpoint if its cached health is fresh and healthy
2. Otherwise probe the primary; return it if healthy
3. Otherwise probe fallbacks round-robin, starting after the last fallback
   that was found healthy
4. Raise AllEndpointsUnhealthy when every probe fails

A background task re-runs the probe sequence on a fixed interval so the
current selection stays warm. It is owned by the registry and must be
stopped with shutdown().
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Iterable, Optional, TypeVar

from chainrail.chains import ChainFamily
from chainrail.errors import (
    AllEndpointsUnhealthy,
    EndpointError,
    RpcError,
    UnsupportedChain,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Probe returns the current block height / slot of the endpoint
ProbeFn = Callable[[str], Awaitable[int]]


@dataclass(frozen=True)
class EndpointSet:
    """Ordered RPC endpoints of one chain. Immutable after startup."""
    chain: str
    family: ChainFamily
    primary: str
    fallbacks: tuple[str, ...] = ()

    def __post_init__(self):
        if not self.primary:
            raise ValueError(f"Endpoint set for {self.chain} needs a primary endpoint")

    @property
    def urls(self) -> tuple[str, ...]:
        return (self.primary, *self.fallbacks)


@dataclass
class EndpointHealth:
    """Last probe outcome of one endpoint. Process lifetime only."""
    endpoint: str
    healthy: bool = False
    last_checked_at: Optional[float] = None
    last_height: Optional[int] = None
    failures: int = 0


@dataclass
class _ChainState:
    endpoint_set: EndpointSet
    probe: ProbeFn
    health: dict[str, EndpointHealth] = field(default_factory=dict)
    current: Optional[str] = None
    last_good_fallback: Optional[int] = None


class EndpointRegistry:
    """Tracks endpoint health per chain and selects a healthy endpoint.

    Usage:
        registry = EndpointRegistry(health_ttl=30, check_interval=30)
        registry.register(endpoint_set, probe)
        registry.start()
        url = await registry.select_healthy("ethereum")
        ...
        await registry.shutdown()
    """

    def __init__(
        self,
        health_ttl: float = 30.0,
        check_interval: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.health_ttl = health_ttl
        self.check_interval = check_interval
        self._clock = clock
        self._chains: dict[str, _ChainState] = {}
        self._task: Optional[asyncio.Task] = None

    # ======================
    # Registration
    # ======================

    def register(self, endpoint_set: EndpointSet, probe: ProbeFn) -> None:
        """Register the endpoints of a chain with its liveness probe."""
        state = _ChainState(endpoint_set=endpoint_set, probe=probe)
        for url in endpoint_set.urls:
            state.health[url] = EndpointHealth(endpoint=url)
        self._chains[endpoint_set.chain] = state
        logger.info(
            f"Registered {endpoint_set.chain} endpoints "
            f"(primary + {len(endpoint_set.fallbacks)} fallbacks)"
        )

    @property
    def chains(self) -> list[str]:
        return list(self._chains)

    def get_endpoint_set(self, chain: str) -> EndpointSet:
        return self._state(chain).endpoint_set

    def get_health(self, chain: str, endpoint: str) -> EndpointHealth:
        return self._state(chain).health[endpoint]

    def _state(self, chain: str) -> _ChainState:
        try:
            return self._chains[chain]
        except KeyError:
            raise UnsupportedChain(chain) from None

    # ======================
    # Probing and selection
    # ======================

    async def probe(self, chain: str, endpoint: str) -> bool:
        """Probe one endpoint and record the outcome.

        Healthy requires a strictly positive height/slot. Any exception
        raised by the probe counts as unhealthy.
        """
        state = self._state(chain)
        record = state.health[endpoint]
        try:
            height = await state.probe(endpoint)
            healthy = isinstance(height, int) and height > 0
        except Exception as e:
            logger.debug(f"Probe of {endpoint} ({chain}) failed: {e}")
            height = None
            healthy = False

        record.healthy = healthy
        record.last_checked_at = self._clock()
        record.last_height = height if healthy else record.last_height
        record.failures = 0 if healthy else record.failures + 1
        return healthy

    async def select_healthy(self, chain: str, exclude: Iterable[str] = ()) -> str:
        """Select a healthy endpoint for a chain.

        Args:
            chain: Chain identifier
            exclude: Endpoints not to return (already failed in this attempt)

        Returns:
            Endpoint URL

        Raises:
            AllEndpointsUnhealthy: If no eligible endpoint passes its probe
        """
        state = self._state(chain)
        excluded = set(exclude)

        current = state.current
        if current and current not in excluded and self._is_fresh(state.health[current]):
            return current

        return await self._probe_and_select(chain, excluded)

    async def _probe_and_select(self, chain: str, excluded: set[str]) -> str:
        state = self._state(chain)
        endpoint_set = state.endpoint_set

        if endpoint_set.primary not in excluded:
            if await self.probe(chain, endpoint_set.primary):
                self._set_current(state, endpoint_set.primary)
                return endpoint_set.primary

        fallbacks = endpoint_set.fallbacks
        if fallbacks:
            last = state.last_good_fallback
            start = 0 if last is None else (last + 1) % len(fallbacks)
            for offset in range(len(fallbacks)):
                index = (start + offset) % len(fallbacks)
                url = fallbacks[index]
                if url in excluded:
                    continue
                if await self.probe(chain, url):
                    state.last_good_fallback = index
                    self._set_current(state, url)
                    return url

        state.current = None
        raise AllEndpointsUnhealthy(chain)

    def _set_current(self, state: _ChainState, url: str) -> None:
        if state.current != url:
            logger.info(f"{state.endpoint_set.chain}: switched to endpoint {url}")
        state.current = url

    def _is_fresh(self, record: EndpointHealth) -> bool:
        if not record.healthy or record.last_checked_at is None:
            return False
        return (self._clock() - record.last_checked_at) < self.health_ttl

    def report_failure(self, chain: str, endpoint: str) -> None:
        """Mark an endpoint unhealthy after a failed call."""
        state = self._state(chain)
        record = state.health.get(endpoint)
        if record is None:
            return
        record.healthy = False
        record.last_checked_at = self._clock()
        record.failures += 1
        logger.warning(f"{chain}: endpoint {endpoint} reported failing ({record.failures} in a row)")

    def report_success(self, chain: str, endpoint: str) -> None:
        """Refresh cached health after a successful call."""
        record = self._state(chain).health.get(endpoint)
        if record is None:
            return
        record.healthy = True
        record.last_checked_at = self._clock()
        record.failures = 0

    # ======================
    # Failover
    # ======================

    async def call_with_failover(
        self,
        chain: str,
        fn: Callable[[str], Awaitable[T]],
        retry_rpc_errors: bool = False,
    ) -> T:
        """Run ``fn(endpoint)`` against healthy endpoints until one succeeds.

        Makes at most ``1 + len(fallbacks)`` attempts, never reusing an
        endpoint that already failed in this call. Endpoint errors (transport,
        timeout) always fail over; JSON-RPC errors only when
        ``retry_rpc_errors`` is set.

        Raises:
            The last endpoint/RPC error once attempts are exhausted, or
            AllEndpointsUnhealthy when no endpoint could be selected at all.
        """
        endpoint_set = self.get_endpoint_set(chain)
        attempts = len(endpoint_set.urls)
        tried: list[str] = []
        last_error: Optional[Exception] = None

        for attempt in range(attempts):
            try:
                endpoint = await self.select_healthy(chain, exclude=tried)
            except AllEndpointsUnhealthy:
                if last_error is not None:
                    raise last_error
                raise

            try:
                result = await fn(endpoint)
            except EndpointError as e:
                last_error = e
            except RpcError as e:
                if not retry_rpc_errors:
                    raise
                last_error = e
            else:
                self.report_success(chain, endpoint)
                return result

            tried.append(endpoint)
            self.report_failure(chain, endpoint)
            logger.warning(
                f"{chain}: attempt {attempt + 1}/{attempts} on {endpoint} failed: {last_error}"
            )

        raise last_error

    # ======================
    # Background probing
    # ======================

    async def check_all(self) -> None:
        """Re-run the probe sequence for every chain. Never raises."""
        for chain in list(self._chains):
            try:
                await self._probe_and_select(chain, set())
            except AllEndpointsUnhealthy:
                logger.warning(f"{chain} RPC health check failed: no healthy endpoint")

    async def _run(self) -> None:
        logger.info(f"Starting endpoint health loop (interval: {self.check_interval}s)")
        while True:
            await self.check_all()
            await asyncio.sleep(self.check_interval)

    def start(self) -> None:
        """Start the background probe loop. Requires a running event loop."""
        if self._task is not None and not self._task.done():
            return
        self._task = asyncio.get_running_loop().create_task(self._run())

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def shutdown(self) -> None:
        """Cancel the background probe loop and wait for it to finish."""
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("Endpoint health loop stopped")

    # ======================
    # Reporting
    # ======================

    def health_status(self) -> dict[str, dict]:
        """Get health of the current endpoint of every chain."""
        status = {}
        for chain, state in self._chains.items():
            current = state.current or state.endpoint_set.primary
            record = state.health[current]
            status[chain] = {
                # None until the first probe
                "healthy": record.healthy if record.last_checked_at is not None else None,
                "current_endpoint": current,
            }
        return status
