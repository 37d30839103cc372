"""Route requests to upstreams chosen by predicates, with load balancing."""

from __future__ import annotations

import copy
import enum
import random
import re
import threading
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import Optional

from .core import Body, HttpService, Request, Response

_SCHEME = re.compile(r"[A-Za-z][A-Za-z0-9+.\-]*")


class LoadBalanceStrategy(enum.Enum):
    """How a backend is chosen when an upstream has several."""

    ROUND_ROBIN = "round_robin"
    RANDOM = "random"


@dataclass(frozen=True)
class UpstreamTarget:
    """Where a request should be forwarded."""

    authority: str
    scheme: str


def _valid_authority(authority: str) -> bool:
    host_port = authority.rpartition("@")[2]
    if host_port.startswith("["):
        end = host_port.find("]")
        if end == -1:
            return False
        host, rest = host_port[: end + 1], host_port[end + 1 :]
        if rest and not rest.startswith(":"):
            return False
        port = rest[1:]
    else:
        host, _, port = host_port.partition(":")
        if ":" in port:
            return False
    if not host:
        return False
    if port and (not port.isdigit() or int(port) > 65535):
        return False
    return True


def parse_backend(url: str) -> UpstreamTarget:
    """Parse a backend URL into a target; the scheme defaults to http."""
    if not url or any(char.isspace() or ord(char) < 32 or ord(char) == 127 for char in url):
        raise ValueError(f"invalid upstream URL {url!r}")
    if "://" in url:
        scheme, _, rest = url.partition("://")
        if not _SCHEME.fullmatch(scheme):
            raise ValueError(f"invalid upstream URL {url!r}")
        authority = re.split(r"[/?#]", rest, maxsplit=1)[0]
        if not authority or not _valid_authority(authority):
            raise ValueError(f"invalid upstream URL {url!r}")
        return UpstreamTarget(authority=authority, scheme=scheme.lower())
    if url.startswith("/") or url == "*":
        raise ValueError(f"upstream URL {url!r} must contain a host")
    if any(char in url for char in "/?#") or not _valid_authority(url):
        raise ValueError(f"invalid upstream URL {url!r}")
    return UpstreamTarget(authority=url, scheme="http")


class _Counter:
    def __init__(self) -> None:
        self._value = 0
        self._lock = threading.Lock()

    def next(self) -> int:
        with self._lock:
            value = self._value
            self._value += 1
            return value


class Upstream:
    """One or more backend URLs with a load-balancing strategy."""

    def __init__(
        self,
        urls: Iterable[str],
        strategy: LoadBalanceStrategy = LoadBalanceStrategy.ROUND_ROBIN,
    ):
        self.backends: tuple[UpstreamTarget, ...] = tuple(parse_backend(url) for url in urls)
        if not self.backends:
            raise ValueError("at least one upstream URL is required")
        self.strategy = strategy
        self._counter = _Counter()

    @classmethod
    def balanced(cls, urls: Iterable[str]) -> Upstream:
        return cls(urls)

    def with_strategy(self, strategy: LoadBalanceStrategy) -> Upstream:
        """Return this upstream using ``strategy``; the rotation is shared."""
        other = copy.copy(self)
        other.strategy = strategy
        return other

    def to_target(self) -> UpstreamTarget:
        """Pick the backend for the next request."""
        if len(self.backends) == 1:
            return self.backends[0]
        if self.strategy is LoadBalanceStrategy.RANDOM:
            return random.choice(self.backends)
        return self.backends[self._counter.next() % len(self.backends)]


Predicate = Callable[[Request], bool]


class Router:
    """Evaluate predicates in order; the first match picks the upstream."""

    def __init__(self) -> None:
        self.routes: list[tuple[Predicate, Upstream]] = []
        self.default: Optional[Upstream] = None

    def route(self, predicate: Predicate, upstream: Upstream) -> Router:
        self.routes.append((predicate, upstream))
        return self

    def default_upstream(self, upstream: Upstream) -> Router:
        self.default = upstream
        return self

    def layer(self, inner: HttpService) -> RouterService:
        return RouterService(inner, tuple(self.routes), self.default)


class RouterService:
    def __init__(
        self,
        inner: HttpService,
        routes: Iterable[tuple[Predicate, Upstream]],
        default: Optional[Upstream] = None,
    ):
        self.inner = inner
        self.routes = tuple(routes)
        self.default = default

    async def __call__(self, request: Request) -> Response:
        upstream = next(
            (upstream for predicate, upstream in self.routes if predicate(request)),
            self.default,
        )
        if upstream is None:
            return Response(
                status=502,
                body=Body.full("no upstream configured for this request"),
            )
        request.extensions[UpstreamTarget] = upstream.to_target()
        return await self.inner(request)