from http import HTTPStatus

import pytest

from proxyware.core import Request, Response
from proxyware.set_response import SetResponse, SetResponseService


async def _unreachable(request):
    raise AssertionError("upstream must not be called")


@pytest.mark.asyncio
async def test_ok_returns_fixed_body():
    service = SetResponse.ok("healthy").layer(_unreachable)
    response = await service(Request(uri="/health"))
    assert response.status == HTTPStatus.OK
    assert await response.body.read() == b"healthy"


@pytest.mark.asyncio
async def test_custom_status():
    service = SetResponse(HTTPStatus.SERVICE_UNAVAILABLE, b"down").layer(_unreachable)
    response = await service(Request())
    assert response.status == HTTPStatus.SERVICE_UNAVAILABLE
    assert await response.body.read() == b"down"


@pytest.mark.asyncio
async def test_repeated_calls_give_fresh_bodies():
    service = SetResponseService(HTTPStatus.OK, "same")
    first = await service(Request())
    second = await service(Request())
    assert await first.body.read() == await second.body.read() == b"same"
    assert second.body.exact_size == len(b"same")


def test_invalid_status_rejected():
    with pytest.raises(ValueError):
        SetResponse(42, "x")


@pytest.mark.asyncio
async def test_response_is_a_response():
    response = await SetResponse.ok(b"").layer(_unreachable)(Request())
    assert isinstance(response, Response) and await response.body.read() == b""