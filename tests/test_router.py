import pytest

from proxyware.core import Headers, Request, Response
from proxyware.router import (
    LoadBalanceStrategy,
    Router,
    RouterService,
    Upstream,
    UpstreamTarget,
    parse_backend,
)


def make_request(path):
    return Request(uri=f"http://localhost{path}")


async def echo_authority(request):
    target = request.extensions[UpstreamTarget]
    return Response(headers=Headers([("x-authority", target.authority)]))


def test_upstream_single_backend():
    target = Upstream(["http://api:8080"]).to_target()
    assert target.authority == "api:8080"
    assert target.scheme == "http"


def test_upstream_https_backend():
    target = Upstream(["https://api.example.com"]).to_target()
    assert target.authority == "api.example.com"
    assert target.scheme == "https"


def test_upstream_round_robin():
    upstream = Upstream.balanced(["http://a:8080", "http://b:8080", "http://c:8080"])
    picks = [upstream.to_target().authority for _ in range(4)]
    assert picks == ["a:8080", "b:8080", "c:8080", "a:8080"]


def test_upstream_random_picks_valid_backend():
    upstream = Upstream.balanced(["http://a:8080", "http://b:8080"]).with_strategy(
        LoadBalanceStrategy.RANDOM
    )
    for _ in range(100):
        assert upstream.to_target().authority in {"a:8080", "b:8080"}


def test_upstream_empty_urls_fails():
    with pytest.raises(ValueError):
        Upstream([])


def test_upstream_invalid_url_fails():
    with pytest.raises(ValueError):
        Upstream(["not a url"])


def test_parse_backend_with_port():
    backend = parse_backend("http://localhost:3000")
    assert backend.authority == "localhost:3000"
    assert backend.scheme == "http"


def test_parse_backend_default_scheme():
    assert parse_backend("http://host").scheme == "http"


def test_parse_backend_without_host_fails():
    with pytest.raises(ValueError, match="must contain a host"):
        parse_backend("/only/a/path")


@pytest.mark.asyncio
async def test_router_matches_first_route():
    router = (
        Router()
        .route(lambda req: req.path.startswith("/api"), Upstream(["http://api:8080"]))
        .route(lambda req: req.path.startswith("/static"), Upstream(["http://cdn:9000"]))
    )
    svc = router.layer(echo_authority)
    resp = await svc(make_request("/api/users"))
    assert resp.headers.get("x-authority") == "api:8080"
    resp = await svc(make_request("/static/img.png"))
    assert resp.headers.get("x-authority") == "cdn:9000"


@pytest.mark.asyncio
async def test_router_uses_default():
    router = (
        Router()
        .route(lambda req: req.path.startswith("/api"), Upstream(["http://api:8080"]))
        .default_upstream(Upstream(["http://default:3000"]))
    )
    svc = router.layer(echo_authority)
    resp = await svc(make_request("/other"))
    assert resp.headers.get("x-authority") == "default:3000"


@pytest.mark.asyncio
async def test_router_502_on_no_match_no_default():
    called = []

    async def inner(request):
        called.append(request)
        return Response()

    router = Router().route(
        lambda req: req.path.startswith("/api"), Upstream(["http://api:8080"])
    )
    svc = router.layer(inner)
    resp = await svc(make_request("/other"))
    assert resp.status == 502
    assert await resp.body.read() == b"no upstream configured for this request"
    assert called == []


@pytest.mark.asyncio
async def test_router_service_balances_across_calls():
    svc = RouterService(
        echo_authority,
        [(lambda req: True, Upstream.balanced(["http://a:1", "http://b:2"]))],
    )
    first = await svc(make_request("/"))
    second = await svc(make_request("/"))
    assert first.headers.get("x-authority") == "a:1"
    assert second.headers.get("x-authority") == "b:2"