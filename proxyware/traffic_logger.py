"""Layer that logs HTTP request and response traffic."""

from __future__ import annotations

import sys
import threading
import time
from dataclasses import replace
from typing import Any, Optional, TextIO, Union

from .core import Body, Headers, HttpService, Request, Response, status_reason

_VERSIONS = {
    "HTTP/0.9": "HTTP/0.9",
    "HTTP/1.0": "HTTP/1.0",
    "HTTP/1.1": "HTTP/1.1",
    "HTTP/2": "HTTP/2",
    "HTTP/2.0": "HTTP/2",
    "HTTP/3": "HTTP/3",
    "HTTP/3.0": "HTTP/3",
}


def format_version(version: str) -> str:
    """Canonical spelling of an HTTP version, or ``HTTP/?`` if unknown."""
    return _VERSIONS.get(str(version).upper(), "HTTP/?")


def _format_elapsed(seconds: float) -> str:
    """Render a duration with the largest unit that keeps it at least one."""
    nanos = max(0, round(seconds * 1_000_000_000))
    for unit, suffix in ((1_000_000_000, "s"), (1_000_000, "ms"), (1_000, "µs")):
        if nanos >= unit:
            whole, frac = divmod(nanos, unit)
            digits = str(frac).rjust(len(str(unit)) - 1, "0").rstrip("0")
            return f"{whole}.{digits}{suffix}" if digits else f"{whole}{suffix}"
    return f"{nanos}ns"


def _printable(value: str) -> str:
    if all(char == "\t" or 32 <= ord(char) < 127 for char in value):
        return value
    return "<binary>"


def _header_lines(prefix: str, headers: Headers) -> list[str]:
    return [f"{prefix} {name}: {_printable(value)}" for name, value in headers]


def _text_lines(text: str) -> list[str]:
    lines = text.split("\n")
    if lines and lines[-1] == "":
        lines.pop()
    return [line[:-1] if line.endswith("\r") else line for line in lines]


def _body_lines(prefix: str, data: bytes) -> list[str]:
    lines = [f"{prefix} [body: {len(data)} bytes]"]
    if data:
        try:
            text = data.decode("utf-8")
        except UnicodeDecodeError:
            lines.append(f"{prefix} <binary>")
        else:
            lines.extend(f"{prefix} {line}" for line in _text_lines(text))
    return lines


class _LockedWriter:
    """Serialises blocks of log lines onto a shared stream."""

    def __init__(self, stream: Any):
        self.stream = stream
        self._lock = threading.Lock()

    def write_lines(self, lines: list[str]) -> None:
        text = "".join(f"{line}\n" for line in lines)
        with self._lock:
            try:
                try:
                    self.stream.write(text)
                except TypeError:
                    self.stream.write(text.encode("utf-8"))
                flush = getattr(self.stream, "flush", None)
                if flush is not None:
                    flush()
            except (OSError, ValueError):
                pass


def _response_head(response: Response) -> list[str]:
    reason = status_reason(response.status) or ""
    return [
        f"< {format_version(response.version)} {response.status} {reason}",
        *_header_lines("<", response.headers),
        "<",
    ]


class TrafficLogger:
    """Log request line, headers, status, timing and size; optionally bodies."""

    def __init__(self, log_bodies: bool = False, writer: Optional[Union[TextIO, Any]] = None):
        self.log_bodies = log_bodies
        self._writer = _LockedWriter(writer if writer is not None else sys.stderr)

    @property
    def writer(self) -> Any:
        return self._writer.stream

    def layer(self, inner: HttpService) -> TrafficLoggerService:
        return TrafficLoggerService(inner, self.log_bodies, self._writer)


class TrafficLoggerService:
    def __init__(self, inner: HttpService, log_bodies: bool, writer: Any):
        self.inner = inner
        self.log_bodies = log_bodies
        self._writer = writer if isinstance(writer, _LockedWriter) else _LockedWriter(writer)

    async def __call__(self, request: Request) -> Response:
        start = time.perf_counter()
        self._writer.write_lines(
            [
                f"> {request.method} {request.uri} {format_version(request.version)}",
                *_header_lines(">", request.headers),
                ">",
            ]
        )

        response = await self.inner(request)
        elapsed = _format_elapsed(time.perf_counter() - start)

        if self.log_bodies:
            data = await response.body.read()
            self._writer.write_lines(
                [
                    *_response_head(response),
                    *_body_lines("<", data),
                    "<",
                    f"* Completed in {elapsed}",
                    "",
                ]
            )
            return replace(response, body=Body.full(data))

        content_length = _parse_length(response.headers.get("content-length"))
        completed = f"* Completed in {elapsed}"
        if content_length is not None:
            completed += f", {content_length} bytes"
        self._writer.write_lines([*_response_head(response), completed, ""])
        return response


def _parse_length(value: Optional[str]) -> Optional[int]:
    if value is None or not value.isdigit():
        return None
    return int(value)