# proxyware

Composable asyncio middleware for HTTP proxies. A service is any async
callable that takes a `Request` and returns a `Response`. Each middleware
object has a `layer(inner)` method that wraps a service and returns a new
service. Durations are given in seconds (`float`, `int` or
`datetime.timedelta`).

The package has no dependencies outside the standard library.

## Installation

```
pip install proxyware
```

To run the test suite:

```
pip install "proxyware[test]"
pytest
```

## Building blocks: `proxyware.core`

- `Headers`: ordered, case-insensitive multi-map. `get`, `set` (replace all
  values), `add`, `remove`, `items`, `copy`, `in`, iteration and `len`.
  Names are stored lower-cased.
- `Body`: an async-iterable stream of byte chunks with an optional
  `exact_size`. Build one with `Body.full(data)`, `Body.empty()` or
  `Body.from_stream(iterable_or_async_iterable, exact_size)`; collect it with
  `await body.read()`.
- `Request` (dataclass: `method`, `uri`, `headers`, `body`, `version`,
  `extensions`) with the properties `path`, `query` and `host` (host from the
  URI or the `Host` header, without the port).
- `Response` (dataclass: `status`, `headers`, `body`, `version`) with the
  property `reason`; a status outside 100–999 raises `ValueError`.
- `status_reason(status)`: the canonical reason phrase, or `None`.
- Store interfaces (`typing.Protocol`) for pluggable back ends:
  `RateLimitStore`, `SlidingWindowStore`, `CircuitBreakerStore`, and the
  `CircuitAction` enum (`ALLOW`, `REJECT`).

## Middleware

| Layer | Module | What it does |
| --- | --- | --- |
| `SetResponse` | `proxyware.set_response` | Ignores the inner service and answers with a fixed status and body (`SetResponse(status, body)`, `SetResponse.ok(body)`). |
| `UrlRewrite` | `proxyware.url_rewrite` | Rewrites request paths with route patterns (`/old/{id}`, `/api/v1/{*rest}`) or regular expressions (`$1`, `$name`, `${name}`); rules are tried in order, the first match wins, scheme, authority and query are kept. |
| `TrafficLogger` | `proxyware.traffic_logger` | Writes the request line and headers, the status line and headers, elapsed time and `Content-Length`, and with `log_bodies=True` the response body, to a stream (stderr by default). |
| `Router` | `proxyware.router` | Picks an `Upstream` by the first matching predicate (or the default upstream), stores an `UpstreamTarget` in `request.extensions[UpstreamTarget]`, and answers 502 when nothing matches. Upstreams balance several backends round-robin or at random (`LoadBalanceStrategy`). |
| `SlidingWindow` | `proxyware.sliding_window` | Allows at most `count` requests per `window`, globally (`SlidingWindow.global_`), per host (`per_host`) or per custom key (`keyed`); once the window is full a request waits until a slot opens. State lives in `InMemorySlidingWindowStore`, with `max_keys` and `idle_ttl` controls. |
| `Retry` | `proxyware.retry` | Retries on chosen statuses (default 429, 502, 503, 504) with jittered exponential backoff capped by `max_backoff`, honours a numeric `Retry-After`, replays request bodies up to `max_replay_body_bytes` (default 1 MiB), and supports a retry budget. |

`proxyware.retry_support` holds the pieces `Retry` is built from:
`BudgetState`, `ReplayCapture`, `recording_body`, `exponential_delay` and
`retry_after_delay`.

## Example

```python
import asyncio
import sys

from proxyware.core import Body, Request, Response
from proxyware.retry import Retry
from proxyware.router import Router, Upstream, UpstreamTarget
from proxyware.traffic_logger import TrafficLogger
from proxyware.url_rewrite import UrlRewrite


async def forward(request: Request) -> Response:
    # Stand-in for a real transport: report where the request would go.
    target = request.extensions[UpstreamTarget]
    return Response(status=200, body=Body.full(f"{target.authority} {request.uri}"))


service = forward
service = Retry.on_statuses([502, 503], max_retries=3, backoff=0.1).layer(service)
service = UrlRewrite.path("/api/v1/{*rest}", "/v2/{rest}").layer(service)
service = (
    Router()
    .route(lambda req: req.path.startswith("/api"),
           Upstream.balanced(["http://a:8080", "http://b:8080"]))
    .default_upstream(Upstream(["http://fallback:3000"]))
    .layer(service)
)
service = TrafficLogger(writer=sys.stdout).layer(service)


async def main() -> None:
    response = await service(Request(method="GET", uri="http://localhost/api/v1/users"))
    print(response.status, await response.body.read())


asyncio.run(main())
```

The last layer wrapped sees each request first.

## Retry policies

Instead of status codes, `Retry` can ask a callable on each attempt:

- `with_policy_headers(func)`: `func(response, attempt)` sees the status and
  headers; the response body is not read.
- `with_policy(func)`: `func(response, body, attempt)` gets the body as
  `bytes`, after it has been read in full.

Either returns a delay in seconds to retry after, or `None` to accept the
response. `with_budget(ratio, window=10.0, min_retries=30)` caps the share of
retries among all requests in each window, always allowing `min_retries`
retries per window; the budget is shared by every service built from that
`Retry`. When the request body is larger than `max_replay_body_bytes`, or was
not read to the end by the inner service, no retry is made.

## What this package does not do

`proxyware` is a set of middleware layers only. It has no network transport,
no proxy server, no TLS handling and no command-line program: the innermost
service that actually sends requests upstream is yours to supply.
`RateLimitStore` and `CircuitBreakerStore` are interfaces only; the package
ships no token-bucket rate limiter or circuit breaker that uses them.