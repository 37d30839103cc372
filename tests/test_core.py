import pytest

from proxyware.core import Body, Headers, Request, Response, status_reason


async def _mixed_chunks():
    yield b"ab"
    yield "cd"


async def _failing_chunks():
    yield b"partial"
    raise RuntimeError("stream failed")


def test_headers_are_case_insensitive():
    headers = Headers({"Content-Type": "text/plain"})
    assert headers.get("content-type") == "text/plain"
    assert "CONTENT-TYPE" in headers


def test_headers_set_replaces_all_values():
    headers = Headers([("x-a", "1"), ("X-A", "2")])
    assert len(headers) == 2
    headers.set("x-a", "3")
    assert headers.items() == [("x-a", "3")]


def test_headers_add_keeps_order_and_get_returns_first():
    headers = Headers()
    headers.add("x-a", "1")
    headers.add("x-b", "2")
    headers.add("x-a", "3")
    assert list(headers) == [("x-a", "1"), ("x-b", "2"), ("x-a", "3")]
    assert headers.get("x-a") == "1"


def test_headers_remove_and_missing():
    headers = Headers({"x-remove-me": "present"})
    headers.remove("X-Remove-Me")
    assert "x-remove-me" not in headers
    assert headers.get("x-remove-me") is None


def test_headers_copy_is_independent():
    original = Headers({"x-a": "1"})
    clone = original.copy()
    clone.set("x-a", "2")
    assert original.get("x-a") == "1"
    assert clone == Headers({"x-a": "2"})


@pytest.mark.asyncio
async def test_body_full_round_trip():
    body = Body.full("hello")
    assert body.exact_size == 5
    assert await body.read() == b"hello"


@pytest.mark.asyncio
async def test_body_empty():
    body = Body.empty()
    assert body.exact_size == 0
    assert await body.read() == b""


@pytest.mark.asyncio
async def test_body_from_async_stream():
    body = Body.from_stream(_mixed_chunks())
    assert body.exact_size is None
    assert await body.read() == b"abcd"


@pytest.mark.asyncio
async def test_body_stream_error_propagates_after_data():
    iterator = Body.from_stream(_failing_chunks()).__aiter__()
    assert await iterator.__anext__() == b"partial"
    with pytest.raises(RuntimeError, match="stream failed"):
        await iterator.__anext__()


def test_body_rejects_non_bytes():
    with pytest.raises(TypeError):
        Body.full(12)


def test_request_absolute_uri_parts():
    request = Request(uri="http://api.example.com:8080/users/1?page=2")
    assert request.path == "/users/1"
    assert request.query == "page=2"
    assert request.host == "api.example.com"


def test_request_origin_form_uses_host_header():
    request = Request(uri="/users", headers={"Host": "example.com:3000"})
    assert request.path == "/users"
    assert request.query is None
    assert request.host == "example.com"


def test_request_without_host():
    request = Request(uri="/x")
    assert request.host is None


def test_request_absolute_uri_without_path():
    assert Request(uri="http://localhost").path == "/"


def test_response_reason_and_validation():
    assert Response(status=404).reason == "Not Found"
    assert status_reason(200) == "OK"
    assert status_reason(599) is None
    with pytest.raises(ValueError):
        Response(status=42)