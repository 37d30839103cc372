"""Building blocks for the retry layer: retry budget, body replay and delays."""

from __future__ import annotations

import random
import re
import time
from collections.abc import AsyncIterator
from datetime import timedelta
from typing import Optional, Union

from .core import Body, Response

Seconds = Union[float, int, timedelta]

_RETRY_AFTER = re.compile(r"\+?[0-9]+")
_U64_MAX = 2**64 - 1


def _seconds(value: Seconds) -> float:
    if isinstance(value, timedelta):
        return value.total_seconds()
    return float(value)


def _nanos(value: Seconds) -> int:
    if isinstance(value, timedelta):
        return (value.days * 86_400 + value.seconds) * 1_000_000_000 + value.microseconds * 1_000
    return max(0, round(float(value) * 1_000_000_000))


class BudgetState:
    """Caps the share of retries among all requests within a time window.

    A floor of ``min_retries`` retries per window is always allowed.
    """

    def __init__(self, ratio: float, min_retries: int, window: Seconds):
        self.ratio = float(ratio)
        self.min_retries = int(min_retries)
        self.window = _seconds(window)
        self.requests = 0
        self.retries = 0
        self.window_start = time.monotonic()

    def _maybe_reset_window(self) -> None:
        now = time.monotonic()
        if now - self.window_start >= self.window:
            self.requests = 0
            self.retries = 0
            self.window_start = now

    def record_request(self) -> None:
        self._maybe_reset_window()
        self.requests += 1

    def allows_retry(self) -> bool:
        self._maybe_reset_window()
        if self.retries < self.min_retries:
            return True
        total = self.requests + self.retries
        if total == 0:
            return True
        return self.retries / total < self.ratio

    def record_retry(self) -> None:
        self.retries += 1


class ReplayCapture:
    """Bounded copy of a request body, kept so the request can be replayed."""

    def __init__(self, max_bytes: int):
        self.max_bytes = int(max_bytes)
        self.data = bytearray()
        self.overflowed = False
        self.complete = False

    def record_chunk(self, chunk: bytes) -> None:
        if self.overflowed:
            return
        if len(self.data) + len(chunk) > self.max_bytes:
            self.data.clear()
            self.overflowed = True
            return
        self.data.extend(chunk)

    def snapshot(self) -> Optional[bytes]:
        """The captured body if it was read to the end within the limit, else None."""
        if self.complete and not self.overflowed:
            return bytes(self.data)
        return None


def recording_body(body: Body, capture: ReplayCapture) -> Body:
    """Wrap ``body`` so every chunk passing through is recorded in ``capture``."""

    async def chunks() -> AsyncIterator[bytes]:
        try:
            async for chunk in body:
                capture.record_chunk(chunk)
                yield chunk
        except Exception:
            capture.overflowed = True
            raise
        capture.complete = True

    return Body.from_stream(chunks(), body.exact_size)


def exponential_delay(base: Seconds, max_backoff: Seconds, attempt: int) -> float:
    """Random delay in ``[0, min(base * 2**attempt, max_backoff)]`` seconds."""
    max_delay = min(_nanos(base) << int(attempt), _nanos(max_backoff), _U64_MAX)
    return random.randint(0, max_delay) / 1_000_000_000


def retry_after_delay(response: Response) -> Optional[float]:
    """Delay in seconds from a numeric ``Retry-After`` header, or None."""
    value = response.headers.get("retry-after")
    if value is None or not _RETRY_AFTER.fullmatch(value):
        return None
    seconds = int(value)
    if seconds > _U64_MAX:
        return None
    return float(seconds)