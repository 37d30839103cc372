"""Sliding-window log rate limiter: at most ``count`` requests per ``window``."""

from __future__ import annotations

import asyncio
import threading
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Optional, Union

from .core import HttpService, Request, Response, SlidingWindowStore

Seconds = Union[float, int, timedelta]
KeyFn = Callable[[Request], str]

DEFAULT_MAX_KEYS = 10_000
DEFAULT_IDLE_TTL = 600.0
CLEANUP_INTERVAL = 30.0


def _seconds(value: Seconds) -> float:
    if isinstance(value, timedelta):
        return value.total_seconds()
    return float(value)


@dataclass
class _WindowState:
    last_seen: float
    timestamps: deque = field(default_factory=deque)


class SlidingWindowState:
    """Per-key request logs with idle-key cleanup and soft capacity eviction.

    Times are monotonic seconds; durations are seconds.
    """

    def __init__(
        self,
        count: int,
        window: Seconds,
        max_keys: int = DEFAULT_MAX_KEYS,
        idle_ttl: Seconds = DEFAULT_IDLE_TTL,
    ):
        self.count = int(count)
        self.window = _seconds(window)
        self.max_keys = max(1, int(max_keys))
        self.idle_ttl = _seconds(idle_ttl)
        self.windows: dict[str, _WindowState] = {}
        self.next_cleanup = time.monotonic() + CLEANUP_INTERVAL

    @property
    def effective_ttl(self) -> float:
        return max(self.idle_ttl, self.window)

    def _idle_for(self, state: _WindowState, now: float) -> float:
        return max(0.0, now - state.last_seen)

    def _maybe_cleanup(self, now: float) -> None:
        if now < self.next_cleanup:
            return
        ttl = self.effective_ttl
        self.windows = {
            key: state
            for key, state in self.windows.items()
            if self._idle_for(state, now) <= ttl
        }
        self.next_cleanup = now + CLEANUP_INTERVAL

    def _evict_if_needed(self, key: str, now: float) -> None:
        if key in self.windows or len(self.windows) < self.max_keys:
            return
        ttl = self.effective_ttl
        idle = [
            (state.last_seen, name)
            for name, state in self.windows.items()
            if self._idle_for(state, now) > ttl
        ]
        if idle:
            del self.windows[min(idle)[1]]

    def take(self, key: str, now: Optional[float] = None) -> Optional[float]:
        """Record a request for ``key``; return the wait in seconds, or None."""
        if now is None:
            now = time.monotonic()
        self._maybe_cleanup(now)
        self._evict_if_needed(key, now)
        cutoff = now - self.window
        state = self.windows.get(key)
        if state is None:
            state = self.windows[key] = _WindowState(last_seen=now)
        state.last_seen = now
        timestamps = state.timestamps

        while timestamps and timestamps[0] <= cutoff:
            timestamps.popleft()

        if len(timestamps) < self.count:
            timestamps.append(now)
            return None

        # The oldest entry decides when a slot opens; reserve that slot.
        oldest = timestamps[0]
        delay = self.window - max(0.0, now - oldest)
        timestamps.append(now + delay)
        return delay


class InMemorySlidingWindowStore:
    """Sliding-window store whose state lives in this process."""

    def __init__(self, count: int, window: Seconds):
        self.state = SlidingWindowState(count, window)
        self._lock = threading.Lock()

    def set_max_keys(self, max_keys: int) -> None:
        with self._lock:
            self.state.max_keys = max(1, int(max_keys))

    def set_idle_ttl(self, ttl: Seconds) -> None:
        with self._lock:
            self.state.idle_ttl = _seconds(ttl)

    async def take(self, key: str) -> Optional[float]:
        with self._lock:
            return self.state.take(key)


def extract_host(request: Request) -> str:
    """Host of the request without its port, or ``unknown``."""
    return request.host or "unknown"


class SlidingWindow:
    """Hard cap of ``count`` requests per ``window`` for each derived key."""

    def __init__(self, store: SlidingWindowStore, key_fn: KeyFn):
        self.store = store
        self.key_fn = key_fn

    @classmethod
    def keyed(cls, count: int, window: Seconds, key_fn: KeyFn) -> SlidingWindow:
        return cls(InMemorySlidingWindowStore(count, window), key_fn)

    @classmethod
    def global_(cls, count: int, window: Seconds) -> SlidingWindow:
        return cls.keyed(count, window, lambda _request: "")

    @classmethod
    def per_host(cls, count: int, window: Seconds) -> SlidingWindow:
        return cls.keyed(count, window, extract_host)

    def _memory_store(self) -> InMemorySlidingWindowStore:
        if not isinstance(self.store, InMemorySlidingWindowStore):
            raise TypeError("this setting applies only to the in-memory store")
        return self.store

    def max_keys(self, max_keys: int) -> SlidingWindow:
        """Soft cap on tracked keys; only idle keys are evicted."""
        self._memory_store().set_max_keys(max_keys)
        return self

    def idle_ttl(self, ttl: Seconds) -> SlidingWindow:
        """Drop key state idle for longer than ``ttl``."""
        self._memory_store().set_idle_ttl(ttl)
        return self

    def layer(self, inner: HttpService) -> SlidingWindowService:
        return SlidingWindowService(inner, self.store, self.key_fn)


class SlidingWindowService:
    def __init__(self, inner: HttpService, store: SlidingWindowStore, key_fn: KeyFn):
        self.inner = inner
        self.store = store
        self.key_fn = key_fn

    async def __call__(self, request: Request) -> Response:
        key = self.key_fn(request)
        delay = await self.store.take(key)
        if delay is not None:
            await asyncio.sleep(delay)
        return await self.inner(request)