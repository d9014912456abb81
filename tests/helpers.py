"""Test helpers: SSE encoding for fake backend streams and client stream parsing."""

from __future__ import annotations

import json
from contextlib import asynccontextmanager
from typing import Any, Iterable


def sse_body(*events: Any) -> bytes:
    """Encode backend events (dicts or raw strings) as an SSE byte stream."""
    parts = []
    for ev in events:
        data = ev if isinstance(ev, str) else json.dumps(ev)
        parts.append(f"event: message\ndata: {data}\n\n")
    return "".join(parts).encode("utf-8")


def parse_client_stream(text: str) -> list[Any]:
    """Split a client SSE body into decoded chunks, keeping ``[DONE]`` as a string."""
    out: list[Any] = []
    for block in text.split("\n\n"):
        if not block.strip():
            continue
        assert block.startswith("data: ")
        data = block[len("data: "):]
        out.append(data if data == "[DONE]" else json.loads(data))
    return out


class FakeContent:
    def __init__(self, chunks: Iterable[bytes]) -> None:
        self._chunks = list(chunks)

    async def iter_chunked(self, n: int):
        for chunk in self._chunks:
            yield chunk


class FakeResponse:
    def __init__(self, status: int = 200, chunks: Iterable[bytes] = (), body: str = "") -> None:
        self.status = status
        self.content = FakeContent(chunks)
        self._body = body

    async def text(self) -> str:
        return self._body


class FakeClient:
    """Mimics the subset of ``aiohttp.ClientSession`` the routes use."""

    def __init__(self, *responses: Any) -> None:
        self._responses = list(responses)
        self.calls: list[dict[str, Any]] = []

    def post(self, url: str, json: Any = None, headers: Any = None):
        self.calls.append({"url": url, "json": json, "headers": headers})
        return self._open(self._responses.pop(0))

    @asynccontextmanager
    async def _open(self, resp: Any):
        if isinstance(resp, BaseException):
            raise resp
        yield resp
