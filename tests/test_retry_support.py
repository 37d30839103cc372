import time
from datetime import timedelta

import pytest

from proxyware.core import Body, Response
from proxyware.retry_support import (
    BudgetState,
    ReplayCapture,
    exponential_delay,
    recording_body,
    retry_after_delay,
)


async def _failing_stream():
    yield b"partial"
    raise RuntimeError("stream failed")


@pytest.mark.asyncio
async def test_recording_body_marks_overflowed_on_stream_error():
    capture = ReplayCapture(1024)
    body = recording_body(Body.from_stream(_failing_stream()), capture)
    chunks = body.__aiter__()

    first = await anext(chunks)
    assert first == b"partial"

    with pytest.raises(RuntimeError, match="stream failed"):
        await anext(chunks)

    assert capture.snapshot() is None
    assert capture.overflowed is True


@pytest.mark.asyncio
async def test_recording_body_captures_complete_body():
    capture = ReplayCapture(1024)
    body = recording_body(Body.from_stream([b"hel", b"lo"], exact_size=5), capture)
    assert body.exact_size == 5
    assert await body.read() == b"hello"
    assert capture.snapshot() == b"hello"


@pytest.mark.asyncio
async def test_recording_body_incomplete_has_no_snapshot():
    capture = ReplayCapture(1024)
    body = recording_body(Body.from_stream([b"a", b"b"]), capture)
    chunks = body.__aiter__()
    assert await anext(chunks) == b"a"
    assert capture.snapshot() is None


@pytest.mark.asyncio
async def test_recording_body_over_limit_has_no_snapshot():
    capture = ReplayCapture(4)
    body = recording_body(Body.full("this body is larger than 4 bytes"), capture)
    assert await body.read() == b"this body is larger than 4 bytes"
    assert capture.snapshot() is None


def test_replay_capture_exact_limit_is_kept():
    capture = ReplayCapture(4)
    capture.record_chunk(b"ab")
    capture.record_chunk(b"cd")
    capture.complete = True
    assert capture.snapshot() == b"abcd"


def test_replay_capture_overflow_discards_everything():
    capture = ReplayCapture(4)
    capture.record_chunk(b"abc")
    capture.record_chunk(b"de")
    capture.record_chunk(b"f")
    capture.complete = True
    assert capture.overflowed is True
    assert capture.data == bytearray()
    assert capture.snapshot() is None


def test_budget_allows_when_under_ratio():
    budget = BudgetState(0.5, 0, 60)
    budget.requests = 10
    budget.retries = 3
    assert budget.allows_retry() is True


def test_budget_blocks_when_over_ratio():
    budget = BudgetState(0.2, 0, 60)
    budget.requests = 10
    budget.retries = 3
    assert budget.allows_retry() is False


def test_budget_floor_allows_retries():
    budget = BudgetState(0.0, 10, 60)
    budget.requests = 100
    budget.retries = 0
    assert budget.allows_retry() is True


def test_budget_zero_ratio_no_floor_blocks():
    budget = BudgetState(0.0, 0, 60)
    budget.record_request()
    assert budget.allows_retry() is False


def test_budget_window_reset():
    budget = BudgetState(0.2, 0, timedelta(milliseconds=1))
    budget.requests = 10
    budget.retries = 10
    budget.window_start = time.monotonic() + 10
    assert budget.allows_retry() is False
    budget.window_start = time.monotonic() - 0.01
    assert budget.allows_retry() is True
    assert budget.requests == 0
    assert budget.retries == 0


def test_budget_record_request_and_retry():
    budget = BudgetState(0.5, 0, 60)
    budget.record_request()
    budget.record_request()
    assert budget.requests == 2
    assert budget.retries == 0
    budget.record_retry()
    assert budget.retries == 1


def test_exponential_delay_zero_base_is_zero():
    assert exponential_delay(0, 30, 5) == 0.0


@pytest.mark.parametrize("attempt", [0, 1, 2, 3])
def test_exponential_delay_within_bound(attempt):
    bound = 0.1 * 2**attempt
    for _ in range(50):
        delay = exponential_delay(0.1, 30, attempt)
        assert 0.0 <= delay <= bound + 1e-9


def test_exponential_delay_capped_by_max_backoff():
    for _ in range(50):
        delay = exponential_delay(timedelta(seconds=1), timedelta(seconds=30), 20)
        assert 0.0 <= delay <= 30.0


@pytest.mark.parametrize(
    "value, expected",
    [("1", 1.0), ("120", 120.0), ("+5", 5.0), ("0", 0.0)],
)
def test_retry_after_numeric(value, expected):
    response = Response(status=503, headers=[("Retry-After", value)])
    assert retry_after_delay(response) == expected


@pytest.mark.parametrize(
    "value",
    ["", "-1", "1.5", "soon", "Wed, 21 Oct 2015 07:28:00 GMT", str(2**64)],
)
def test_retry_after_invalid(value):
    response = Response(status=503, headers=[("retry-after", value)])
    assert retry_after_delay(response) is None


def test_retry_after_missing():
    assert retry_after_delay(Response(status=503)) is None