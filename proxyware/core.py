"""Core HTTP types shared by the middleware layers."""

from __future__ import annotations

import enum
from collections.abc import AsyncIterator, Awaitable, Callable, Iterable, Mapping
from dataclasses import dataclass, field
from http import HTTPStatus
from typing import Any, Optional, Protocol, Union, runtime_checkable

BytesLike = Union[bytes, bytearray, memoryview, str]


def _to_bytes(data: BytesLike) -> bytes:
    if isinstance(data, str):
        return data.encode("utf-8")
    if isinstance(data, (bytes, bytearray, memoryview)):
        return bytes(data)
    raise TypeError(f"expected bytes or str, got {type(data).__name__}")


def _split_uri(uri: str) -> tuple[str, str, str, Optional[str]]:
    """Split a request URI into scheme, authority, path and query."""
    head = uri.split("?", 1)[0]
    if "://" in head:
        scheme, _, rest = uri.partition("://")
        cut = len(rest)
        for sep in "/?":
            index = rest.find(sep)
            if index != -1:
                cut = min(cut, index)
        authority, rest = rest[:cut], rest[cut:]
    else:
        scheme, authority, rest = "", "", uri
    path, sep, query = rest.partition("?")
    return scheme, authority, path or "/", (query if sep else None)


def _strip_port(host: str) -> str:
    if host.startswith("["):
        end = host.find("]")
        return host[: end + 1] if end != -1 else host
    return host.partition(":")[0]


class Headers:
    """Ordered, case-insensitive multi-map of HTTP header fields."""

    __slots__ = ("_entries",)

    def __init__(self, items: Union[Mapping[str, str], Iterable[tuple[str, str]], None] = None):
        self._entries: list[tuple[str, str]] = []
        if items is None:
            return
        pairs = items.items() if isinstance(items, (Headers, Mapping)) else items
        for name, value in pairs:
            self.add(name, value)

    def get(self, name: str) -> Optional[str]:
        """Return the first value stored under ``name``, or None."""
        wanted = name.lower()
        return next((value for key, value in self._entries if key == wanted), None)

    def set(self, name: str, value: str) -> None:
        """Replace every value of ``name`` with a single ``value``."""
        self.remove(name)
        self.add(name, value)

    def add(self, name: str, value: str) -> None:
        """Append a value without touching existing ones."""
        self._entries.append((name.lower(), str(value)))

    def remove(self, name: str) -> None:
        """Drop every value stored under ``name``."""
        wanted = name.lower()
        self._entries = [(key, value) for key, value in self._entries if key != wanted]

    def items(self) -> list[tuple[str, str]]:
        return list(self._entries)

    def copy(self) -> Headers:
        return Headers(self._entries)

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and any(key == name.lower() for key, _ in self._entries)

    def __iter__(self):
        return iter(list(self._entries))

    def __len__(self) -> int:
        return len(self._entries)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Headers):
            return NotImplemented
        return self._entries == other._entries

    def __repr__(self) -> str:
        return f"Headers({self._entries!r})"


class Body:
    """A stream of byte chunks, with an optional exact size hint."""

    def __init__(self, chunks: Any = (), exact_size: Optional[int] = None):
        self._chunks = chunks
        self.exact_size = exact_size

    @classmethod
    def full(cls, data: BytesLike) -> Body:
        payload = _to_bytes(data)
        return cls((payload,) if payload else (), exact_size=len(payload))

    @classmethod
    def empty(cls) -> Body:
        return cls((), exact_size=0)

    @classmethod
    def from_stream(cls, stream: Any, exact_size: Optional[int] = None) -> Body:
        """Wrap a sync or async iterable of chunks."""
        return cls(stream, exact_size)

    async def __aiter__(self) -> AsyncIterator[bytes]:
        source = self._chunks
        if hasattr(source, "__aiter__"):
            async for chunk in source:
                yield _to_bytes(chunk)
        else:
            for chunk in source:
                yield _to_bytes(chunk)

    async def read(self) -> bytes:
        """Collect the whole body."""
        return b"".join([chunk async for chunk in self])


def _coerce_body(body: Any) -> Body:
    if isinstance(body, Body):
        return body
    return Body.full(body)


@dataclass
class Request:
    method: str = "GET"
    uri: str = "/"
    headers: Headers = field(default_factory=Headers)
    body: Body = field(default_factory=Body.empty)
    version: str = "HTTP/1.1"
    extensions: dict = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not isinstance(self.headers, Headers):
            self.headers = Headers(self.headers)
        self.body = _coerce_body(self.body)

    @property
    def path(self) -> str:
        return _split_uri(self.uri)[2]

    @property
    def query(self) -> Optional[str]:
        return _split_uri(self.uri)[3]

    @property
    def host(self) -> Optional[str]:
        """Host from the URI, or from the Host header, without the port."""
        authority = _split_uri(self.uri)[1]
        raw = authority.rpartition("@")[2] if authority else self.headers.get("host")
        if not raw:
            return None
        return _strip_port(raw) or None


@dataclass
class Response:
    status: int = 200
    headers: Headers = field(default_factory=Headers)
    body: Body = field(default_factory=Body.empty)
    version: str = "HTTP/1.1"

    def __post_init__(self) -> None:
        self.status = int(self.status)
        if not 100 <= self.status <= 999:
            raise ValueError(f"invalid status code: {self.status}")
        if not isinstance(self.headers, Headers):
            self.headers = Headers(self.headers)
        self.body = _coerce_body(self.body)

    @property
    def reason(self) -> Optional[str]:
        return status_reason(self.status)


def status_reason(status: int) -> Optional[str]:
    """Canonical reason phrase for a status code, or None if unknown."""
    try:
        return HTTPStatus(int(status)).phrase
    except ValueError:
        return None


HttpService = Callable[[Request], Awaitable[Response]]


class CircuitAction(enum.Enum):
    """Outcome of checking a circuit breaker."""

    ALLOW = "allow"
    REJECT = "reject"


@runtime_checkable
class RateLimitStore(Protocol):
    """Token-bucket backend: consume a token, return a delay in seconds or None."""

    async def take(self, key: str) -> Optional[float]: ...


@runtime_checkable
class SlidingWindowStore(Protocol):
    """Sliding-window backend: record a request, return a delay in seconds or None."""

    async def take(self, key: str) -> Optional[float]: ...


@runtime_checkable
class CircuitBreakerStore(Protocol):
    """Per-key circuit state machine backend."""

    async def check(self, key: str) -> CircuitAction: ...

    async def record(self, key: str, success: bool) -> None: ...