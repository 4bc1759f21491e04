# upstream_balancer

Spread requests over several upstream services. The upstreams come from a
fixed list of targets or from a discovery source whose set changes while
the application runs. A discovery source can be DNS-based.

The package runs on asyncio and needs Python 3.10 or later. Its only
runtime dependency is `dnspython`. The `test` extra adds `pytest` and
`pytest-asyncio`, which the test suite needs.

## Modules

- `upstream_balancer.messages`: the `Request` and `Response` dataclasses,
  the discovery changes `Insert(key, service)` and `Remove(key)`, and
  `service_unavailable(message)`, which builds a 503 `Response` with the
  given body.
- `upstream_balancer.balanced_proxy`: `BalancedProxy`,
  `DiscoverableBalancedProxy` and `LoadBalancingStrategy`.
- `upstream_balancer.dns_discovery`: `DnsDiscoveryConfig`, `DnsDiscovery`,
  `StaticDnsDiscovery`, `resolve_services(config)` and `DnsDiscoveryError`.
- `upstream_balancer.danger`: `create_dangerous_ssl_context()`.

## Requests and responses

`Request(method="GET", uri="/", headers={}, body=b"")` stores the method in
upper case. A `str` body is encoded as UTF-8.

`Response(status=200, headers={}, body=b"")` also accepts a `str` body.
`Response.text()` decodes the body as UTF-8.

## Upstreams and factories

An upstream is any async callable that takes a `Request` and returns a
`Response`. A proxy does not create upstreams itself. It calls the
`factory` you give it as `factory(path, target)` once for each target.
`path` is the proxy's base path and `target` is the upstream URL.

## Fixed set of upstreams

`BalancedProxy(path, targets, factory)` builds one upstream per target and
sends requests to them in round-robin order. A proxy is an async callable:
`await proxy(request)` returns the upstream's `Response`.

If there are no targets, every request gets a 503 response with the body
`No upstream services available`. The `path` property returns the base
path.

## Discovered upstreams

`DiscoverableBalancedProxy(path, factory, discover, strategy=LoadBalancingStrategy.ROUND_ROBIN)`
takes its upstreams from `discover`, an async iterable of `Insert` and
`Remove` changes.

- `await proxy.start_discovery()` starts a background task that applies
  the changes. It raises `RuntimeError` if discovery is already running.
- `await proxy.stop_discovery()` cancels that task. The current upstreams
  are kept.
- `proxy.service_count()` returns the number of upstreams currently known.
- The `path` and `strategy` properties return the settings the proxy was
  built with.

How the proxy handles changes:

- An `Insert` appends a new upstream for `str(service)`.
- A `Remove` drops the upstream registered under that key.
- A `Remove` for an unknown key is ignored.
- An exception raised by the discovery iterator is logged, and iteration
  continues.
- When the iterator ends, discovery stops.

Each change replaces the set of upstreams as a whole, so requests already
in flight are not affected. While no upstream is known, requests get the
503 `No upstream services available` response.

Strategies, from `LoadBalancingStrategy`:

- `ROUND_ROBIN` (the default): upstreams in turn.
- `P2C_PENDING_REQUESTS`: picks two distinct upstreams at random and sends
  the request to the one with fewer requests in flight.
- `P2C_PEAK_EWMA`: picks two at random and sends the request to the one
  with the lower peak-EWMA latency. That value decays with time since the
  upstream's last measurement, and the newest peak has a weight of 0.25.

With a single upstream, both P2C strategies use it directly.

## DNS-based discovery

`DnsDiscoveryConfig(hostname, port)` is a frozen dataclass. Its `with_*`
methods return modified copies:

- `with_refresh_interval(interval)` takes seconds or a `timedelta`, which
  must be positive. The default is 30 seconds.
- `with_https(use_https)` chooses between `https://` and `http://` URLs.
  The default is `http://`.
- `with_resolver_config(nameservers)` takes a non-empty sequence of name
  server addresses. Without it, the system configuration is used.
- `with_resolver_opts(opts)` takes a mapping whose keys must be among
  `timeout`, `lifetime`, `rotate` and `ndots`.

Invalid values raise `ValueError`, and so does a port outside 0–65535.

Each resolved address becomes a service URL of the form
`http://<ip>:<port>`. IPv6 addresses are bracketed. Resolution works as
follows:

- A host name that is already an IP address resolves to itself.
- `localhost` resolves to `127.0.0.1` and `::1` without a query.
- Any other name is queried for A and AAAA records.
- `await resolve_services(config)` performs one lookup and returns a dict
  mapping each address to its URL. If no address is found, it raises
  `DnsDiscoveryError`.

Both discovery classes must be created while an event loop is running.
They are async iterators of changes, and `aclose()` stops them.

- `DnsDiscovery(config)` re-resolves at every refresh interval. It yields
  `Insert(ip, url)` for new addresses and `Remove(ip)` for vanished ones.
  A failed lookup is raised from `__anext__` as `DnsDiscoveryError`, and
  iteration can continue afterwards.
- `StaticDnsDiscovery(config)` resolves once. It yields an `Insert` for
  each address, or raises the lookup error, and then ends.

```python
import asyncio

from upstream_balancer.balanced_proxy import DiscoverableBalancedProxy, LoadBalancingStrategy
from upstream_balancer.dns_discovery import DnsDiscovery, DnsDiscoveryConfig
from upstream_balancer.messages import Request, Response


def factory(path, target):
    async def handler(request: Request) -> Response:
        return Response(body=f"{target} handled {request.uri}")
    return handler


async def main():
    config = DnsDiscoveryConfig("localhost", 8080).with_refresh_interval(30)
    discovery = DnsDiscovery(config)
    proxy = DiscoverableBalancedProxy(
        "/api", factory, discovery, LoadBalancingStrategy.ROUND_ROBIN
    )
    await proxy.start_discovery()
    await asyncio.sleep(0.1)
    print(proxy.service_count())
    print((await proxy(Request(uri="/api/test"))).text())
    await proxy.stop_discovery()
    await discovery.aclose()


asyncio.run(main())
```

## Accepting any certificate

`create_dangerous_ssl_context()` returns an `ssl.SSLContext` for clients
that checks neither the certificate nor the host name. Connections made
with it are open to man-in-the-middle attacks. Use it only in development
or test set-ups with self-signed certificates.

## What the package does not do

The package does not do network I/O for requests:

- It has no HTTP server or listener.
- It has no HTTP client that forwards requests to an upstream URL.
- It has no command-line program.

Forwarding happens through the handlers your `factory` returns. Serving
the proxy is up to the application that calls it.