"""Server-Sent Events framing and encoding helpers."""
from __future__ import annotations

import json
import logging
from typing import Any, AsyncIterator, Iterator

DONE = "[DONE]"

# Upper bound for one SSE line; response.completed carries the whole output.
MAX_LINE_BYTES = 32 * 1024 * 1024

logger = logging.getLogger(__name__)


class SSELineFramer:
    """Accumulate ``data:`` lines into complete event payloads.

    Lines are fed one at a time with their line terminator already removed.
    A blank line dispatches whatever has been buffered; other SSE fields
    (``event:``, ``id:``, comments) are ignored.
    """

    def __init__(self) -> None:
        self._parts: list[str] = []

    def push_line(self, line: str) -> Iterator[str]:
        if line == "":
            if self._parts:
                payload = "\n".join(self._parts)
                self._parts.clear()
                yield payload
            return

        if line.startswith("data:"):
            value = line[5:]
            if value.startswith(" "):
                value = value[1:]
            self._parts.append(value)

    def flush(self) -> Iterator[str]:
        """Dispatch a trailing payload the upstream never terminated."""
        if self._parts:
            payload = "\n".join(self._parts)
            self._parts.clear()
            yield payload


def encode_chunk(value: Any) -> str:
    return f"data: {json.dumps(value, ensure_ascii=False, separators=(',', ':'))}\n\n"


def encode_done() -> str:
    return f"data: {DONE}\n\n"


def encode_emission(value: Any) -> str:
    """Encode a transcoder emission: the ``DONE`` marker or a JSON chunk."""
    if isinstance(value, str) and value == DONE:
        return encode_done()
    return encode_chunk(value)


async def iter_sse_lines(
    byte_iter: AsyncIterator[bytes], *, max_buffer_bytes: int = MAX_LINE_BYTES
) -> AsyncIterator[str]:
    """Yield decoded lines (terminators stripped) without relying on upstream readline limits."""
    buffer = bytearray()

    async for chunk in byte_iter:
        if not chunk:
            continue
        buffer.extend(chunk)
        while True:
            newline_idx = buffer.find(b"\n")
            if newline_idx == -1:
                break
            line = bytes(buffer[:newline_idx])
            del buffer[: newline_idx + 1]
            yield line.decode("utf-8", errors="replace").rstrip("\r")
        if len(buffer) > max_buffer_bytes:
            # Safeguard against runaways when upstream omits newlines.
            logger.warning(
                "SSE line exceeded %d bytes without a newline; splitting it, the event will not parse",
                max_buffer_bytes,
            )
            yield bytes(buffer).decode("utf-8", errors="replace").rstrip("\r")
            buffer.clear()

    if buffer:
        yield bytes(buffer).decode("utf-8", errors="replace").rstrip("\r")
