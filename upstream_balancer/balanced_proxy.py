"""Load-balanced proxies over a fixed or a dynamically discovered set of upstreams.

An upstream is any async callable that takes a ``Request`` and returns a
``Response``. Proxies build their upstreams through a factory called as
``factory(path, target)``, where ``path`` is the base path the proxy serves
and ``target`` is the upstream's URL.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import math
import random
import time
from collections.abc import AsyncIterable, Awaitable, Callable, Hashable, Iterable
from dataclasses import dataclass, field
from enum import Enum
from typing import NamedTuple

from upstream_balancer.messages import Insert, Remove, Request, Response, service_unavailable

logger = logging.getLogger(__name__)

Handler = Callable[[Request], Awaitable[Response]]
UpstreamFactory = Callable[[str, str], Handler]

_NO_UPSTREAMS = "No upstream services available"
# Loads decay by e^(-t/5): roughly halving every few seconds.
_DECAY_SECONDS = 5.0
# Weight of the newest peak in the moving average.
_EWMA_ALPHA = 0.25

_rng = random.SystemRandom()


class LoadBalancingStrategy(Enum):
    """How requests are spread across discovered services."""

    ROUND_ROBIN = "round_robin"
    """Simple round-robin distribution (the default)."""
    P2C_PENDING_REQUESTS = "p2c_pending_requests"
    """Power of two choices, with the number of in-flight requests as load."""
    P2C_PEAK_EWMA = "p2c_peak_ewma"
    """Power of two choices, with a decaying peak EWMA of latency as load."""


class _Upstream(NamedTuple):
    target: str
    handler: Handler


class BalancedProxy:
    """Round-robin proxy over a fixed list of upstream targets."""

    def __init__(self, path: str, targets: Iterable[str], factory: UpstreamFactory) -> None:
        self._path = str(path)
        self._upstreams = tuple(
            _Upstream(str(target), factory(self._path, str(target))) for target in targets
        )
        self._counter = itertools.count()

    @property
    def path(self) -> str:
        """The base path this proxy serves."""
        return self._path

    async def __call__(self, request: Request) -> Response:
        """Forward ``request`` to the next upstream, or answer 503 if there is none."""
        if not self._upstreams:
            logger.warning(_NO_UPSTREAMS)
            return service_unavailable(_NO_UPSTREAMS)
        upstream = self._upstreams[next(self._counter) % len(self._upstreams)]
        logger.debug("balanced proxying via upstream %s", upstream.target)
        return await upstream.handler(request)


@dataclass
class _ServiceMetrics:
    pending_requests: int = 0
    peak_ewma_micros: int = 0
    last_update: float = field(default_factory=time.monotonic)

    def decayed_ewma(self, now: float) -> int:
        factor = math.exp(-(now - self.last_update) / _DECAY_SECONDS)
        return int(self.peak_ewma_micros * factor)


class _P2cBalancer:
    """Power-of-two-choices selection with per-position service metrics."""

    def __init__(self, strategy: LoadBalancingStrategy) -> None:
        self._strategy = strategy
        self._metrics: list[_ServiceMetrics] = []

    def _resize(self, size: int) -> None:
        if len(self._metrics) != size:
            kept = self._metrics[:size]
            kept.extend(_ServiceMetrics() for _ in range(size - len(kept)))
            self._metrics = kept

    def _load(self, metrics: _ServiceMetrics) -> int:
        if self._strategy is LoadBalancingStrategy.P2C_PENDING_REQUESTS:
            return metrics.pending_requests
        return metrics.decayed_ewma(time.monotonic())

    def _select(self, count: int) -> int:
        if count == 1:
            return 0
        first, second = _rng.sample(range(count), 2)
        if self._load(self._metrics[first]) <= self._load(self._metrics[second]):
            return first
        return second

    @staticmethod
    def _record_latency(metrics: _ServiceMetrics, latency_micros: int) -> None:
        now = time.monotonic()
        if metrics.peak_ewma_micros == 0:
            metrics.peak_ewma_micros = latency_micros
        else:
            decayed = metrics.decayed_ewma(now)
            peak = max(decayed, latency_micros)
            metrics.peak_ewma_micros = int(peak * _EWMA_ALPHA + decayed * (1 - _EWMA_ALPHA))
        metrics.last_update = now

    async def dispatch(self, upstreams: tuple[_Upstream, ...], request: Request) -> Response:
        if not upstreams:
            return service_unavailable(_NO_UPSTREAMS)
        self._resize(len(upstreams))
        index = self._select(len(upstreams))
        metrics = self._metrics[index]
        tracks_pending = self._strategy is LoadBalancingStrategy.P2C_PENDING_REQUESTS

        if tracks_pending:
            metrics.pending_requests += 1
        start = time.monotonic()
        try:
            response = await upstreams[index].handler(request)
        finally:
            if tracks_pending:
                metrics.pending_requests -= 1
        if self._strategy is LoadBalancingStrategy.P2C_PEAK_EWMA:
            self._record_latency(metrics, int((time.monotonic() - start) * 1_000_000))
        return response


class DiscoverableBalancedProxy:
    """Balanced proxy whose upstreams come from a stream of discovery changes.

    ``discover`` is an async iterable of ``Insert(key, target)`` and
    ``Remove(key)`` changes. Changes replace the set of upstreams as a whole,
    so requests already in flight are not disturbed.
    """

    def __init__(
        self,
        path: str,
        factory: UpstreamFactory,
        discover: AsyncIterable[Insert | Remove],
        strategy: LoadBalancingStrategy = LoadBalancingStrategy.ROUND_ROBIN,
    ) -> None:
        self._path = str(path)
        self._factory = factory
        self._discover = discover
        self._strategy = LoadBalancingStrategy(strategy)
        self._upstreams: tuple[_Upstream, ...] = ()
        self._keys: dict[Hashable, int] = {}
        self._counter = itertools.count()
        self._p2c = (
            None
            if self._strategy is LoadBalancingStrategy.ROUND_ROBIN
            else _P2cBalancer(self._strategy)
        )
        self._task: asyncio.Task[None] | None = None

    @property
    def path(self) -> str:
        """The base path this proxy serves."""
        return self._path

    @property
    def strategy(self) -> LoadBalancingStrategy:
        """The load balancing strategy in use."""
        return self._strategy

    async def start_discovery(self) -> None:
        """Begin consuming discovery changes in a background task."""
        if self._task is not None and not self._task.done():
            raise RuntimeError("discovery is already running")
        self._task = asyncio.get_running_loop().create_task(self._run_discovery())

    async def stop_discovery(self) -> None:
        """Stop consuming discovery changes; the current upstreams are kept."""
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    def service_count(self) -> int:
        """Return the number of upstreams currently known."""
        return len(self._upstreams)

    async def _run_discovery(self) -> None:
        changes = aiter(self._discover)
        while True:
            try:
                change = await anext(changes)
            except StopAsyncIteration:
                logger.warning("Discovery stream ended")
                return
            except Exception as exc:
                logger.error("Discovery error: %r", exc)
                continue
            self._apply(change)

    def _apply(self, change: Insert | Remove) -> None:
        if isinstance(change, Insert):
            target = str(change.service)
            logger.debug("Discovered new service: %r -> %s", change.key, target)
            upstream = _Upstream(target, self._factory(self._path, target))
            self._keys[change.key] = len(self._upstreams)
            self._upstreams = (*self._upstreams, upstream)
        elif isinstance(change, Remove):
            logger.debug("Removing service: %r", change.key)
            index = self._keys.pop(change.key, None)
            if index is None:
                return
            self._upstreams = self._upstreams[:index] + self._upstreams[index + 1 :]
            for key, position in self._keys.items():
                if position > index:
                    self._keys[key] = position - 1
        else:
            logger.error("Ignoring unknown discovery change: %r", change)

    async def __call__(self, request: Request) -> Response:
        """Forward ``request`` to an upstream chosen by the strategy."""
        upstreams = self._upstreams
        if self._p2c is not None:
            return await self._p2c.dispatch(upstreams, request)
        if not upstreams:
            logger.warning(_NO_UPSTREAMS)
            return service_unavailable(_NO_UPSTREAMS)
        upstream = upstreams[next(self._counter) % len(upstreams)]
        return await upstream.handler(request)