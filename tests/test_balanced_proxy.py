import asyncio
from collections import Counter

import pytest

from upstream_balancer.balanced_proxy import (
    BalancedProxy,
    DiscoverableBalancedProxy,
    LoadBalancingStrategy,
)
from upstream_balancer.messages import Insert, Remove, Request, Response

END = object()


class QueueDiscovery:
    """Discovery stream fed by the test; waits while nothing is queued."""

    def __init__(self, *items):
        self.queue = asyncio.Queue()
        for item in items:
            self.queue.put_nowait(item)

    def __aiter__(self):
        return self

    async def __anext__(self):
        item = await self.queue.get()
        if item is END:
            raise StopAsyncIteration
        if isinstance(item, Exception):
            raise item
        return item


def body_factory(bodies=None):
    bodies = bodies or {}

    def factory(path, target):
        async def handler(request):
            return Response(body=bodies.get(target, target))

        return handler

    return factory


async def wait_until(predicate, timeout=1.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.001)


async def settle():
    for _ in range(20):
        await asyncio.sleep(0)


@pytest.mark.asyncio
async def test_balanced_proxy_round_robin_order():
    proxy = BalancedProxy("/api", ["a", "b", "c"], body_factory())
    bodies = [(await proxy(Request(uri="/api/x"))).text() for _ in range(6)]
    assert bodies == ["a", "b", "c", "a", "b", "c"]


@pytest.mark.asyncio
async def test_balanced_proxy_without_targets_is_unavailable():
    proxy = BalancedProxy("/api", [], body_factory())
    response = await proxy(Request(uri="/api/x"))
    assert response.status == 503
    assert response.text() == "No upstream services available"


def test_balanced_proxy_passes_path_to_factory():
    calls = []

    def factory(path, target):
        calls.append((path, target))

        async def handler(request):
            return Response()

        return handler

    proxy = BalancedProxy("/api", ["http://one", "http://two"], factory)
    assert proxy.path == "/api"
    assert calls == [("/api", "http://one"), ("/api", "http://two")]


@pytest.mark.asyncio
async def test_balanced_proxy_forwards_request_unchanged():
    seen = []

    def factory(path, target):
        async def handler(request):
            seen.append(request)
            return Response(status=201, body=request.body)

        return handler

    proxy = BalancedProxy("/", ["t"], factory)
    request = Request(method="post", uri="/echo", body=b"payload")
    response = await proxy(request)
    assert response.status == 201
    assert response.body == b"payload"
    assert seen == [request]


@pytest.mark.asyncio
async def test_discoverable_defaults():
    proxy = DiscoverableBalancedProxy("/api", body_factory(), QueueDiscovery())
    assert proxy.path == "/api"
    assert proxy.strategy is LoadBalancingStrategy.ROUND_ROBIN
    assert proxy.service_count() == 0


@pytest.mark.asyncio
async def test_discoverable_proxy_http_requests():
    bodies = {
        "http://127.0.0.1:9001": "Response from server 1",
        "http://127.0.0.1:9002": "Response from server 2",
    }
    discovery = QueueDiscovery(*(Insert(i, url) for i, url in enumerate(bodies)))
    proxy = DiscoverableBalancedProxy("/api", body_factory(bodies), discovery)
    await proxy.start_discovery()
    await wait_until(lambda: proxy.service_count() == 2)
    assert proxy.service_count() > 0

    for _ in range(4):
        response = await proxy(Request(uri="/api/test"))
        assert response.status == 200
        text = response.text()
        assert "Response from server 1" in text or "Response from server 2" in text
    await proxy.stop_discovery()


@pytest.mark.asyncio
async def test_discoverable_proxy_load_balancing():
    discovery = QueueDiscovery(*(Insert(i, f"server{i + 1}") for i in range(3)))
    proxy = DiscoverableBalancedProxy("/", body_factory(), discovery)
    await proxy.start_discovery()
    await wait_until(lambda: proxy.service_count() == 3)
    assert proxy.service_count() == 3

    counts = Counter()
    for _ in range(9):
        response = await proxy(Request(uri="/test"))
        assert response.status == 200
        counts[response.text()] += 1
    assert counts == {"server1": 3, "server2": 3, "server3": 3}
    await proxy.stop_discovery()


@pytest.mark.asyncio
async def test_discoverable_proxy_service_unavailable():
    proxy = DiscoverableBalancedProxy("/api", body_factory(), QueueDiscovery())
    await proxy.start_discovery()
    await settle()
    assert proxy.service_count() == 0

    response = await proxy(Request(uri="/api/test"))
    assert response.status == 503
    assert "No upstream services available" in response.text()
    await proxy.stop_discovery()


@pytest.mark.asyncio
async def test_remove_shifts_remaining_services():
    discovery = QueueDiscovery(Insert(0, "a"), Insert(1, "b"), Insert(2, "c"))
    proxy = DiscoverableBalancedProxy("/", body_factory(), discovery)
    await proxy.start_discovery()
    await wait_until(lambda: proxy.service_count() == 3)

    discovery.queue.put_nowait(Remove(1))
    await wait_until(lambda: proxy.service_count() == 2)
    seen = {(await proxy(Request())).text() for _ in range(4)}
    assert seen == {"a", "c"}

    discovery.queue.put_nowait(Remove(2))
    await wait_until(lambda: proxy.service_count() == 1)
    seen = {(await proxy(Request())).text() for _ in range(3)}
    assert seen == {"a"}
    await proxy.stop_discovery()


@pytest.mark.asyncio
async def test_remove_of_unknown_key_is_ignored():
    discovery = QueueDiscovery(Insert("x", "a"), Remove("missing"), Insert("y", "b"))
    proxy = DiscoverableBalancedProxy("/", body_factory(), discovery)
    await proxy.start_discovery()
    await wait_until(lambda: discovery.queue.empty())
    await settle()
    assert proxy.service_count() == 2
    await proxy.stop_discovery()


@pytest.mark.asyncio
async def test_discovery_error_does_not_stop_discovery():
    discovery = QueueDiscovery(RuntimeError("boom"), Insert(0, "a"))
    proxy = DiscoverableBalancedProxy("/", body_factory(), discovery)
    await proxy.start_discovery()
    await wait_until(lambda: proxy.service_count() == 1)
    assert (await proxy(Request())).text() == "a"
    await proxy.stop_discovery()


@pytest.mark.asyncio
async def test_discovery_ends_with_stream():
    discovery = QueueDiscovery(Insert(0, "a"), END)
    proxy = DiscoverableBalancedProxy("/", body_factory(), discovery)
    await proxy.start_discovery()
    await wait_until(lambda: discovery.queue.empty())
    await settle()
    discovery.queue.put_nowait(Insert(1, "b"))
    await settle()
    assert proxy.service_count() == 1
    assert discovery.queue.qsize() == 1


@pytest.mark.asyncio
async def test_stop_discovery_keeps_services_and_stops_consuming():
    discovery = QueueDiscovery(Insert(0, "a"))
    proxy = DiscoverableBalancedProxy("/", body_factory(), discovery)
    await proxy.start_discovery()
    await wait_until(lambda: proxy.service_count() == 1)
    await proxy.stop_discovery()

    discovery.queue.put_nowait(Insert(1, "b"))
    await settle()
    assert proxy.service_count() == 1
    assert discovery.queue.qsize() == 1


@pytest.mark.asyncio
async def test_start_discovery_twice_raises():
    proxy = DiscoverableBalancedProxy("/", body_factory(), QueueDiscovery())
    await proxy.start_discovery()
    with pytest.raises(RuntimeError):
        await proxy.start_discovery()
    await proxy.stop_discovery()


@pytest.mark.asyncio
async def test_insert_passes_path_and_target_to_factory():
    calls = []

    def factory(path, target):
        calls.append((path, target))

        async def handler(request):
            return Response()

        return handler

    discovery = QueueDiscovery(Insert(7, "http://upstream:80"))
    proxy = DiscoverableBalancedProxy("/api", factory, discovery)
    await proxy.start_discovery()
    await wait_until(lambda: proxy.service_count() == 1)
    assert calls == [("/api", "http://upstream:80")]
    await proxy.stop_discovery()


@pytest.mark.parametrize(
    "strategy",
    [LoadBalancingStrategy.P2C_PENDING_REQUESTS, LoadBalancingStrategy.P2C_PEAK_EWMA],
)
@pytest.mark.asyncio
async def test_p2c_without_services_is_unavailable(strategy):
    proxy = DiscoverableBalancedProxy("/", body_factory(), QueueDiscovery(), strategy)
    assert proxy.strategy is strategy
    response = await proxy(Request())
    assert response.status == 503
    assert response.text() == "No upstream services available"


@pytest.mark.asyncio
async def test_p2c_single_service_always_chosen():
    discovery = QueueDiscovery(Insert(0, "only"))
    proxy = DiscoverableBalancedProxy(
        "/", body_factory(), discovery, LoadBalancingStrategy.P2C_PENDING_REQUESTS
    )
    await proxy.start_discovery()
    await wait_until(lambda: proxy.service_count() == 1)
    bodies = [(await proxy(Request())).text() for _ in range(3)]
    assert bodies == ["only", "only", "only"]
    await proxy.stop_discovery()


@pytest.mark.asyncio
async def test_p2c_pending_requests_prefers_idle_service():
    calls = []
    gate = asyncio.Event()

    def factory(path, target):
        async def handler(request):
            calls.append(target)
            await gate.wait()
            return Response(body=target)

        return handler

    discovery = QueueDiscovery(Insert(0, "a"), Insert(1, "b"))
    proxy = DiscoverableBalancedProxy(
        "/", factory, discovery, LoadBalancingStrategy.P2C_PENDING_REQUESTS
    )
    await proxy.start_discovery()
    await wait_until(lambda: proxy.service_count() == 2)

    for round_number in range(2):
        gate.clear()
        start = len(calls)
        first = asyncio.ensure_future(proxy(Request()))
        await wait_until(lambda: len(calls) == start + 1)
        second = asyncio.ensure_future(proxy(Request()))
        await wait_until(lambda: len(calls) == start + 2)
        assert calls[start] != calls[start + 1]
        gate.set()
        responses = await asyncio.gather(first, second)
        assert sorted(r.text() for r in responses) == ["a", "b"]
    await proxy.stop_discovery()


@pytest.mark.asyncio
async def test_p2c_peak_ewma_prefers_faster_service():
    def factory(path, target):
        async def handler(request):
            if target == "slow":
                await asyncio.sleep(0.05)
            return Response(body=target)

        return handler

    discovery = QueueDiscovery(Insert(0, "slow"), Insert(1, "fast"))
    proxy = DiscoverableBalancedProxy(
        "/", factory, discovery, LoadBalancingStrategy.P2C_PEAK_EWMA
    )
    await proxy.start_discovery()
    await wait_until(lambda: proxy.service_count() == 2)

    bodies = [(await proxy(Request())).text() for _ in range(6)]
    assert sorted(bodies[:2]) == ["fast", "slow"]
    assert bodies[2:] == ["fast"] * 4
    await proxy.stop_discovery()