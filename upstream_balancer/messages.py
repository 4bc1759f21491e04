"""Request, response and discovery-change types shared across the balancer."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Generic, Hashable, TypeVar

K = TypeVar("K", bound=Hashable)
S = TypeVar("S")


def _to_bytes(body: bytes | bytearray | str) -> bytes:
    if isinstance(body, str):
        return body.encode("utf-8")
    return bytes(body)


@dataclass
class Request:
    """An HTTP request handed to a proxy."""

    method: str = "GET"
    uri: str = "/"
    headers: dict[str, str] = field(default_factory=dict)
    body: bytes = b""

    def __post_init__(self) -> None:
        self.method = self.method.upper()
        self.body = _to_bytes(self.body)


@dataclass
class Response:
    """An HTTP response produced by a proxy."""

    status: int = 200
    headers: dict[str, str] = field(default_factory=dict)
    body: bytes = b""

    def __post_init__(self) -> None:
        self.body = _to_bytes(self.body)

    def text(self) -> str:
        """Return the body decoded as UTF-8; raises UnicodeDecodeError if it is not."""
        return self.body.decode("utf-8")


@dataclass(frozen=True)
class Insert(Generic[K, S]):
    """A discovery change announcing a new service under ``key``."""

    key: K
    service: S


@dataclass(frozen=True)
class Remove(Generic[K]):
    """A discovery change withdrawing the service registered under ``key``."""

    key: K


def service_unavailable(message: str) -> Response:
    """Build the 503 response returned when no upstream can take a request."""
    return Response(status=503, body=message)