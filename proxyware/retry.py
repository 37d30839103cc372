"""Layer that retries requests when the upstream answers with chosen statuses."""

from __future__ import annotations

import asyncio
import copy
import enum
import logging
import threading
from collections.abc import Callable, Iterable
from dataclasses import dataclass, replace
from datetime import timedelta
from typing import Optional, Union

from .core import Body, HttpService, Request, Response
from .retry_support import (
    BudgetState,
    ReplayCapture,
    exponential_delay,
    recording_body,
    retry_after_delay,
)

logger = logging.getLogger(__name__)

Seconds = Union[float, int, timedelta]
HeadersPolicy = Callable[[Response, int], Optional[Seconds]]
BodyPolicy = Callable[[Response, bytes, int], Optional[Seconds]]

DEFAULT_STATUSES = (429, 502, 503, 504)
DEFAULT_MAX_BACKOFF = 30.0
DEFAULT_BUDGET_WINDOW = 10.0
DEFAULT_BUDGET_MIN_RETRIES = 30
DEFAULT_MAX_REPLAY_BODY_BYTES = 1024 * 1024


def _seconds(value: Seconds) -> float:
    if isinstance(value, timedelta):
        return value.total_seconds()
    return float(value)


def _check_status(status: int) -> int:
    code = int(status)
    if not 100 <= code <= 999:
        raise ValueError(f"invalid status code: {status}")
    return code


class _PolicyKind(enum.Enum):
    HEADERS = "headers"
    BODY = "body"


@dataclass(frozen=True)
class _Policy:
    kind: _PolicyKind
    func: Callable


class _SharedBudget:
    """A retry budget shared by every service built from one layer."""

    def __init__(self, state: BudgetState):
        self.state = state
        self._lock = threading.Lock()

    def record_request(self) -> None:
        with self._lock:
            self.state.record_request()

    def try_retry(self) -> bool:
        """Record a retry if the budget allows one; report whether it did."""
        with self._lock:
            if not self.state.allows_retry():
                return False
            self.state.record_retry()
            return True


class Retry:
    """Retry on matching statuses with jittered exponential backoff.

    The first attempt streams the request body upstream while a bounded copy
    is kept for replay. If the body is larger than ``max_replay_body_bytes``,
    or was not read to the end, no retry happens and the first response is
    returned. A numeric ``Retry-After`` header overrides the backoff.
    Durations are in seconds.
    """

    def __init__(
        self,
        statuses: Iterable[int] = DEFAULT_STATUSES,
        max_retries: int = 3,
        backoff: Seconds = 1.0,
        max_backoff: Seconds = DEFAULT_MAX_BACKOFF,
        max_replay_body_bytes: int = DEFAULT_MAX_REPLAY_BODY_BYTES,
    ):
        self.statuses: tuple[int, ...] = tuple(_check_status(s) for s in statuses)
        if int(max_retries) < 0:
            raise ValueError("max_retries must not be negative")
        self.max_retries = int(max_retries)
        self.backoff = _seconds(backoff)
        self.max_backoff = _seconds(max_backoff)
        self.max_replay_body_bytes = max(0, int(max_replay_body_bytes))
        self.policy: Optional[_Policy] = None
        self.budget: Optional[_SharedBudget] = None

    @classmethod
    def on_status(cls, status: int, **kwargs) -> Retry:
        """Retry on a single status code."""
        return cls(statuses=[status], **kwargs)

    @classmethod
    def on_statuses(cls, statuses: Iterable[int], **kwargs) -> Retry:
        """Retry on several status codes."""
        return cls(statuses=statuses, **kwargs)

    def with_policy_headers(self, func: HeadersPolicy) -> Retry:
        """Decide from status and headers; the response body stays unread.

        ``func(response, attempt)`` returns a delay to retry after, or None.
        """
        other = copy.copy(self)
        other.policy = _Policy(_PolicyKind.HEADERS, func)
        return other

    def with_policy(self, func: BodyPolicy) -> Retry:
        """Decide from the fully buffered response.

        ``func(response, body, attempt)`` gets the body as bytes and returns a
        delay to retry after, or None.
        """
        other = copy.copy(self)
        other.policy = _Policy(_PolicyKind.BODY, func)
        return other

    def with_budget(
        self,
        ratio: float,
        window: Seconds = DEFAULT_BUDGET_WINDOW,
        min_retries: int = DEFAULT_BUDGET_MIN_RETRIES,
    ) -> Retry:
        """Allow retries to be at most ``ratio`` of all requests per window.

        ``min_retries`` retries per window are always allowed.
        """
        other = copy.copy(self)
        other.budget = _SharedBudget(BudgetState(ratio, min_retries, window))
        return other

    def layer(self, inner: HttpService) -> RetryService:
        return RetryService(inner, self)


class RetryService:
    def __init__(self, inner: HttpService, config: Retry):
        self.inner = inner
        self.statuses = frozenset(config.statuses)
        self.max_retries = config.max_retries
        self.backoff = config.backoff
        self.max_backoff = config.max_backoff
        self.max_replay_body_bytes = config.max_replay_body_bytes
        self.policy = config.policy
        self.budget = config.budget

    def _allowed(self, replay: Optional[bytes]) -> bool:
        if replay is None:
            return False
        return self.budget is None or self.budget.try_retry()

    async def __call__(self, request: Request) -> Response:
        body = request.body
        known_empty = body.exact_size == 0
        capture = ReplayCapture(self.max_replay_body_bytes)
        replay: Optional[bytes] = b"" if known_empty else None

        if self.budget is not None:
            self.budget.record_request()

        attempt = 0
        while True:
            if attempt == 0:
                attempt_body = body if known_empty else recording_body(body, capture)
            else:
                attempt_body = Body.full(replay or b"")
            attempt_request = replace(
                request,
                headers=request.headers.copy(),
                body=attempt_body,
                extensions=dict(request.extensions),
            )
            response = await self.inner(attempt_request)

            if self.policy is not None and self.policy.kind is _PolicyKind.BODY:
                data = await response.body.read()
                response = replace(response, body=Body.full(data))
                wanted = self.policy.func(response, data, attempt)
            elif self.policy is not None:
                wanted = self.policy.func(response, attempt)
            elif attempt < self.max_retries and response.status in self.statuses:
                wanted = None
            else:
                return response

            if self.policy is not None and (wanted is None or attempt >= self.max_retries):
                return response

            if replay is None:
                replay = capture.snapshot()
            if not self._allowed(replay):
                return response

            if self.policy is None:
                delay = retry_after_delay(response)
                if delay is None:
                    delay = exponential_delay(self.backoff, self.max_backoff, attempt)
            else:
                delay = _seconds(wanted)

            logger.debug(
                "retrying request status=%s attempt=%d max=%d delay_ms=%d",
                response.status,
                attempt + 1,
                self.max_retries,
                int(delay * 1000),
            )
            await asyncio.sleep(delay)
            attempt += 1