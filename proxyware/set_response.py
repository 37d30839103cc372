"""Layer that ignores the upstream and answers with a fixed response."""

from __future__ import annotations

from http import HTTPStatus

from .core import Body, BytesLike, HttpService, Request, Response, _to_bytes


def _check_status(status: int) -> int:
    code = int(status)
    if not 100 <= code <= 999:
        raise ValueError(f"invalid status code: {status}")
    return code


class SetResponse:
    """Return a fixed status and body for every request."""

    def __init__(self, status: int, body: BytesLike = b""):
        self.status = _check_status(status)
        self.body = _to_bytes(body)

    @classmethod
    def ok(cls, body: BytesLike) -> SetResponse:
        return cls(HTTPStatus.OK, body)

    def layer(self, inner: HttpService) -> SetResponseService:
        return SetResponseService(self.status, self.body)


class SetResponseService:
    def __init__(self, status: int, body: BytesLike):
        self.status = _check_status(status)
        self.body = _to_bytes(body)

    async def __call__(self, request: Request) -> Response:
        return Response(status=self.status, body=Body.full(self.body))