"""Service discovery driven by DNS A/AAAA records.

Every address a host name resolves to is treated as one upstream service,
announced as ``Insert(ip, url)`` and withdrawn as ``Remove(ip)``.
"""

from __future__ import annotations

import asyncio
import contextlib
import ipaddress
import logging
from collections.abc import Awaitable, Callable, Mapping, Sequence
from dataclasses import dataclass, replace
from datetime import timedelta
from typing import Any, Union

import dns.asyncresolver
import dns.exception
import dns.resolver

from upstream_balancer.messages import Insert, Remove

logger = logging.getLogger(__name__)

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]
Change = Union[Insert, Remove]

_RESOLVER_OPTIONS = frozenset({"timeout", "lifetime", "rotate", "ndots"})
_LOCALHOST_ADDRESSES = (
    ipaddress.IPv4Address("127.0.0.1"),
    ipaddress.IPv6Address("::1"),
)


class DnsDiscoveryError(Exception):
    """Raised when a host name cannot be resolved."""


@dataclass(frozen=True)
class DnsDiscoveryConfig:
    """Settings for DNS-based discovery.

    ``resolver_config`` is a sequence of name server addresses; when it is
    None the system configuration is used. ``resolver_opts`` maps resolver
    option names (timeout, lifetime, rotate, ndots) to values.
    """

    hostname: str
    port: int
    refresh_interval: float = 30.0
    use_https: bool = False
    resolver_config: tuple[str, ...] | None = None
    resolver_opts: Mapping[str, Any] | None = None

    def __post_init__(self) -> None:
        if not 0 <= self.port <= 0xFFFF:
            raise ValueError(f"port out of range: {self.port}")

    def with_refresh_interval(self, interval: float | timedelta) -> DnsDiscoveryConfig:
        """Return a copy that re-resolves every ``interval`` (seconds or timedelta)."""
        seconds = interval.total_seconds() if isinstance(interval, timedelta) else float(interval)
        if seconds <= 0:
            raise ValueError("refresh interval must be positive")
        return replace(self, refresh_interval=seconds)

    def with_https(self, use_https: bool) -> DnsDiscoveryConfig:
        """Return a copy that builds https (True) or http (False) service URLs."""
        return replace(self, use_https=bool(use_https))

    def with_resolver_config(self, config: Sequence[str]) -> DnsDiscoveryConfig:
        """Return a copy that queries the given name servers."""
        nameservers = tuple(config)
        if not nameservers:
            raise ValueError("at least one name server is required")
        return replace(self, resolver_config=nameservers)

    def with_resolver_opts(self, opts: Mapping[str, Any]) -> DnsDiscoveryConfig:
        """Return a copy with the given resolver options."""
        unknown = set(opts) - _RESOLVER_OPTIONS
        if unknown:
            raise ValueError(f"unknown resolver options: {', '.join(sorted(unknown))}")
        return replace(self, resolver_opts=dict(opts))

    @property
    def scheme(self) -> str:
        return "https" if self.use_https else "http"

    def service_url(self, ip: IPAddress) -> str:
        host = f"[{ip}]" if ip.version == 6 else str(ip)
        return f"{self.scheme}://{host}:{self.port}"


def _build_resolver(config: DnsDiscoveryConfig) -> dns.asyncresolver.Resolver:
    try:
        if config.resolver_config is not None:
            resolver = dns.asyncresolver.Resolver(configure=False)
            resolver.nameservers = list(config.resolver_config)
        else:
            resolver = dns.asyncresolver.Resolver()
    except (dns.exception.DNSException, OSError) as exc:
        raise DnsDiscoveryError(
            f"Failed to create resolver from system config: {exc}"
        ) from exc
    for name, value in (config.resolver_opts or {}).items():
        setattr(resolver, name, value)
    return resolver


async def _lookup_ip(config: DnsDiscoveryConfig) -> list[IPAddress]:
    hostname = config.hostname
    with contextlib.suppress(ValueError):
        return [ipaddress.ip_address(hostname)]
    if hostname.rstrip(".").lower() == "localhost":
        return list(_LOCALHOST_ADDRESSES)

    resolver = _build_resolver(config)
    addresses: list[IPAddress] = []
    failure: Exception | None = None
    for rdtype in ("A", "AAAA"):
        try:
            answer = await resolver.resolve(hostname, rdtype)
        except dns.resolver.NoAnswer:
            continue
        except dns.exception.DNSException as exc:
            failure = exc
            continue
        addresses.extend(ipaddress.ip_address(rdata.address) for rdata in answer)

    if not addresses:
        reason = failure if failure is not None else "no records found"
        raise DnsDiscoveryError(f"DNS lookup failed for {hostname}: {reason}")
    return addresses


async def resolve_services(config: DnsDiscoveryConfig) -> dict[IPAddress, str]:
    """Resolve the configured host name and map each address to its service URL."""
    logger.debug("Resolving DNS for hostname: %s", config.hostname)
    return {ip: config.service_url(ip) for ip in await _lookup_ip(config)}


_END = object()


class _ChangeFeed:
    """Queue of discovery changes filled by a background task."""

    def __init__(self, producer: Callable[[_ChangeFeed], Awaitable[None]]) -> None:
        loop = asyncio.get_running_loop()
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self._closed = False
        self._task = loop.create_task(producer(self))

    def put(self, item: Change | Exception) -> None:
        self._queue.put_nowait(item)

    def finish(self) -> None:
        self._queue.put_nowait(_END)

    async def next(self) -> Change:
        if self._closed:
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is _END:
            self._closed = True
            raise StopAsyncIteration
        if isinstance(item, Exception):
            raise item
        return item

    async def close(self) -> None:
        self._closed = True
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self.finish()


class DnsDiscovery:
    """Periodically re-resolves a host name and reports added and removed addresses.

    A resolution failure is raised from ``__anext__`` as DnsDiscoveryError;
    iteration may continue afterwards. Must be created while an event loop
    is running.
    """

    def __init__(self, config: DnsDiscoveryConfig) -> None:
        self.config = config
        self._feed = _ChangeFeed(self._run)

    def __aiter__(self) -> DnsDiscovery:
        return self

    async def __anext__(self) -> Change:
        return await self._feed.next()

    async def aclose(self) -> None:
        """Stop the background task and end the iteration."""
        await self._feed.close()

    async def _run(self, feed: _ChangeFeed) -> None:
        current: dict[IPAddress, str] = {}
        first = True
        while True:
            try:
                current = await self._refresh(feed, current)
            except DnsDiscoveryError as exc:
                if first:
                    logger.error("Initial DNS resolution failed: %s", exc)
                else:
                    logger.error("DNS resolution refresh failed: %s", exc)
                feed.put(exc)
            first = False
            await asyncio.sleep(self.config.refresh_interval)

    async def _refresh(
        self, feed: _ChangeFeed, current: dict[IPAddress, str]
    ) -> dict[IPAddress, str]:
        found = await resolve_services(self.config)
        for ip in current.keys() - found.keys():
            logger.debug("Removing service: %s", ip)
            feed.put(Remove(ip))
        for ip, url in found.items():
            if ip not in current:
                logger.debug("Adding service: %s -> %s", ip, url)
                feed.put(Insert(ip, url))
        return found


class StaticDnsDiscovery:
    """Resolves a host name once and reports every address found, then ends.

    A resolution failure is raised from ``__anext__`` as DnsDiscoveryError.
    Must be created while an event loop is running.
    """

    def __init__(self, config: DnsDiscoveryConfig) -> None:
        self.config = config
        self._feed = _ChangeFeed(self._run)

    def __aiter__(self) -> StaticDnsDiscovery:
        return self

    async def __anext__(self) -> Change:
        return await self._feed.next()

    async def aclose(self) -> None:
        """Stop the background task and end the iteration."""
        await self._feed.close()

    async def _run(self, feed: _ChangeFeed) -> None:
        logger.debug("Performing static DNS resolution for hostname: %s", self.config.hostname)
        try:
            services = await resolve_services(self.config)
        except DnsDiscoveryError as exc:
            logger.error("Static DNS resolution failed for %s: %s", self.config.hostname, exc)
            feed.put(exc)
        else:
            for ip, url in services.items():
                logger.debug("Discovered service: %s -> %s", ip, url)
                feed.put(Insert(ip, url))
        finally:
            feed.finish()