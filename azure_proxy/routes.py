"""HTTP route handlers for the Azure reasoning proxy.

Clients speak Chat Completions; the backend is an Azure Responses API
deployment. Requests are translated up front, the backend SSE stream is
transcoded event by event, and optional SSE debug logging records what the
backend actually sent.
"""
from __future__ import annotations

import asyncio, aiohttp
import json
import logging, traceback
import time
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Callable, Iterable, Iterator, Optional, Union

from aiohttp import ClientError
from fastapi import APIRouter, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response, StreamingResponse
from pydantic import ValidationError

from .config import ConfigurationError, ProxySettings
from .schemas import (
    ChatCompletionsRequest,
    ChatCompletionsResponse,
    ChatResponseMessage,
    Choice,
    ModelsList,
    Usage,
)
from .sse import SSELineFramer, encode_emission, iter_sse_lines
from .tokens import count_request_tokens
from .transcoder import (
    Emission,
    TranscoderState,
    build_chunk,
    close_reasoning,
    finish_incomplete,
    transcode,
)
from .translator import REASONING_EFFORTS, ModelValidationError, build_responses_request

logger = logging.getLogger(__name__)
router = APIRouter()

CORS_HEADERS = {"Access-Control-Allow-Origin": "*"}

MAX_UPSTREAM_RETRIES = 2
RETRY_BACKOFF_BASE = 0.5

MODELS_PAYLOAD = ModelsList(
    data=[
        {"id": f"gpt-{effort}", "object": "model", "owned_by": "azure"}
        for effort in REASONING_EFFORTS
    ]
)

_TRUTHY = {"1", "true", "yes", "on"}
_FALSY = {"0", "false", "no", "off"}

DebugWriter = Callable[[str], None]


# ---------- Request parsing ----------

def _parse_body(raw: bytes) -> dict[str, Any]:
    """Decode a request body into a JSON object.

    Some clients send the body as a JSON string wrapping the real object, so
    one extra level of string decoding is accepted.

    Raises:
        json.JSONDecodeError: body (or the wrapped string) is not JSON
        ValueError: body is empty
        TypeError: body does not decode to an object
    """
    text = raw.decode("utf-8", errors="replace").strip()
    if not text:
        raise ValueError("Empty request body")

    value: Any = json.loads(text)
    if isinstance(value, str) and value.strip():
        value = json.loads(value)
    if not isinstance(value, dict):
        raise TypeError("Request body must be a JSON object")
    return value


def _error_body(message: str, err_type: str, param: str | None = None) -> dict[str, Any]:
    error: dict[str, Any] = {"message": message, "type": err_type}
    if param:
        error["param"] = param
    return {"error": error}


def _error_response(status: int, message: str, err_type: str, param: str | None = None) -> JSONResponse:
    return JSONResponse(status_code=status, content=_error_body(message, err_type, param), headers=CORS_HEADERS)


# ---------- Backend I/O ----------

def _extract_upstream_error(body: str) -> str:
    try:
        data = json.loads(body)
    except json.JSONDecodeError:
        return ""
    err = data.get("error") if isinstance(data, dict) else None
    if isinstance(err, dict) and isinstance(err.get("message"), str):
        return err["message"]
    return ""


def _build_headers(settings: ProxySettings) -> dict[str, str]:
    return {
        "Content-Type": "application/json",
        "Accept": "text/event-stream",
        "api-key": settings.azure_api_key or "",
    }


def _debug_flag(raw: Optional[str]) -> Optional[bool]:
    flag = (raw or "").strip().lower()
    if flag in _TRUTHY:
        return True
    if flag in _FALSY:
        return False
    return None


def _sse_debug_writer(request: Request, settings: ProxySettings) -> Optional[DebugWriter]:
    """Return a writer for raw backend SSE traffic, or None when debugging is off.

    The settings default can be overridden per request by the ``debug_sse``
    (or ``debug``) query parameter, and the ``x-debug-sse`` header wins over both.
    """
    enabled = settings.debug_sse_enabled
    for override in (
        request.query_params.get("debug_sse") or request.query_params.get("debug"),
        request.headers.get("x-debug-sse"),
    ):
        flag = _debug_flag(override)
        if flag is not None:
            enabled = flag
    if not enabled:
        return None

    path = (settings.debug_sse_path or "").strip()
    if not path:
        return lambda line: logger.debug("[sse] %s", line)

    def append(line: str) -> None:
        stamp = time.strftime("%Y-%m-%d %H:%M:%S", time.gmtime())
        try:
            with open(path, "a", encoding="utf-8") as fh:
                fh.write(f"[{stamp} UTC] {line}\n")
        except OSError as e:
            logger.debug("SSE debug write to %s failed: %s", path, e)

    return append


def _should_retry(status: int) -> bool:
    return status >= 500


async def _sleep_with_backoff(attempt: int, debug: Optional[DebugWriter]) -> None:
    delay = RETRY_BACKOFF_BASE * (2 ** attempt)
    logger.info("Retrying upstream request after %.2fs (attempt %d)", delay, attempt + 1)
    if debug:
        debug(f"retrying upstream request after {delay:.2f}s (attempt {attempt + 1})")
    await asyncio.sleep(delay)


@asynccontextmanager
async def _upstream_request(
    client: Optional[aiohttp.ClientSession],
    url: str,
    payload: dict,
    headers: dict,
    timeout: float,
) -> AsyncIterator[aiohttp.ClientResponse]:
    """Open the backend stream on the shared session, or a one-off session if none exists."""
    if client is not None:
        async with client.post(url, json=payload, headers=headers) as response:
            yield response
        return
    session_timeout = aiohttp.ClientTimeout(total=timeout, sock_read=None)
    async with aiohttp.ClientSession(timeout=session_timeout) as session:
        async with session.post(url, json=payload, headers=headers) as response:
            yield response


class _UpstreamError(RuntimeError):
    """Raised when the backend fails before any chunk reached the client."""

    def __init__(self, message: str, *, status: int = 502) -> None:
        super().__init__(message)
        self.status = status


def _error_emissions(state: TranscoderState, message: str) -> Iterator[Emission]:
    """Surface an error as assistant content, then terminate the stream."""
    if state.finished:
        return
    yield from close_reasoning(state)
    yield build_chunk(state, content=f"Error: {message}")
    yield from finish_incomplete(state)


def _get_stream_iterator(response: aiohttp.ClientResponse) -> AsyncIterator[str]:
    return iter_sse_lines(response.content.iter_chunked(1024))


# ---------- SSE translation ----------

def _transcode_payload(state: TranscoderState, payload: str, debug: Optional[DebugWriter]) -> Iterable[Emission]:
    if debug:
        try:
            et = json.loads(payload).get("type")
        except (json.JSONDecodeError, AttributeError):
            et = "<unparsed>"
        debug(f"event: {et or '<unknown>'} {payload[:300]}")
    return transcode(state, payload)


async def _translate_sse(
    upstream_lines: AsyncIterator[str],
    state: TranscoderState,
    debug: Optional[DebugWriter],
) -> AsyncIterator[Emission]:
    framer = SSELineFramer()
    async for line in upstream_lines:
        if debug:
            debug(f"raw: {line[:500]}")
        for payload in framer.push_line(line):
            for out in _transcode_payload(state, payload, debug):
                yield out
        if state.finished:
            return

    for payload in framer.flush():
        for out in _transcode_payload(state, payload, debug):
            yield out

    if not state.finished:
        logger.warning(
            "Upstream stream for %s ended before response.completed (backend error: %s)",
            state.completion_id,
            state.backend_error or "none reported",
        )
        if debug:
            debug("event: upstream closed without response.completed")
        for out in finish_incomplete(state):
            yield out


async def _upstream_emissions(
    client: Optional[aiohttp.ClientSession],
    settings: ProxySettings,
    upstream_payload: dict[str, Any],
    state: TranscoderState,
    debug: Optional[DebugWriter],
) -> AsyncIterator[Emission]:
    url = settings.responses_url()
    headers = _build_headers(settings)
    for attempt in range(MAX_UPSTREAM_RETRIES + 1):
        try:
            async with _upstream_request(client, url, upstream_payload, headers, settings.request_timeout) as r:
                if debug:
                    debug(f"upstream status: {r.status}")
                if r.status >= 400:
                    body = await r.text()
                    if debug:
                        debug(f"upstream error body: {body[:500]}")
                    if _should_retry(r.status) and attempt < MAX_UPSTREAM_RETRIES:
                        await _sleep_with_backoff(attempt, debug)
                        continue
                    detail = _extract_upstream_error(body) or f"Upstream returned HTTP {r.status}"
                    raise _UpstreamError(detail, status=r.status)

                async for out in _translate_sse(_get_stream_iterator(r), state, debug):
                    yield out
                return
        except (asyncio.TimeoutError, ClientError) as exc:
            if debug:
                debug(f"streaming exception: {exc}")
                debug(traceback.format_exc())
            if state.role_announced:
                # Chunks already went out; a retry would duplicate them.
                logger.warning("Upstream stream for %s broke mid-response: %s", state.completion_id, exc)
                for out in _error_emissions(state, f"Streaming error: {exc}"):
                    yield out
                return
            if attempt < MAX_UPSTREAM_RETRIES:
                await _sleep_with_backoff(attempt, debug)
                continue
            raise _UpstreamError(f"Streaming error: {exc}") from exc


# ---------- Routes ----------

@router.get("/health")
async def health() -> JSONResponse:
    return JSONResponse({"status": "ok", "service": "azure-reasoning-proxy"})


@router.get("/models", response_model=None)
@router.get("/v1/models", response_model=None)
async def models() -> JSONResponse:
    return JSONResponse(content=MODELS_PAYLOAD.model_dump(), headers=CORS_HEADERS)


@router.post("/chat/completions", response_model=None)
@router.post("/v1/chat/completions", response_model=None)
async def chat_completions(request: Request) -> Union[JSONResponse, Response, StreamingResponse]:
    try:
        payload = ChatCompletionsRequest(**_parse_body(await request.body()))
    except json.JSONDecodeError as e:
        logger.error("Failed to parse JSON: %s", e)
        return _error_response(422, f"Invalid JSON: {e.msg} at pos {e.pos}", "invalid_request_error")
    except ValidationError as e:
        raise RequestValidationError(e.errors(include_url=False)) from e
    except (TypeError, ValueError) as e:
        logger.error("Invalid request body: %s", e)
        return _error_response(422, str(e), "invalid_request_error")

    settings: ProxySettings = request.app.state.settings
    try:
        upstream_payload, inbound_model = build_responses_request(payload, settings.azure_deployment)
    except ModelValidationError as e:
        logger.warning("Rejected request: %s", e)
        return _error_response(400, str(e), "invalid_request_error", "model")
    except ConfigurationError as e:
        logger.error("Proxy misconfigured: %s", e)
        return _error_response(500, str(e), "configuration_error")

    try:
        # The first estimate may download tokenizer files; keep it off the event loop.
        estimate = await asyncio.to_thread(
            count_request_tokens, payload, settings.azure_deployment, settings.tokenizer_encoding
        )
        logger.info(
            "chat.completions model=%s effort=%s messages=%d est_prompt_tokens=%s",
            inbound_model,
            upstream_payload["reasoning"]["effort"],
            len(payload.messages),
            "n/a" if estimate is None else estimate,
        )
    except Exception as exc:  # noqa: BLE001
        logger.warning("Token estimate failed: %s", exc)

    debug = _sse_debug_writer(request, settings)
    client = getattr(request.app.state, "http_client", None)
    state = TranscoderState(inbound_model)
    emissions = _upstream_emissions(client, settings, upstream_payload, state, debug)

    if payload.stream is not False:
        async def _stream() -> AsyncIterator[str]:
            try:
                async for out in emissions:
                    yield encode_emission(out)
            except _UpstreamError as exc:
                logger.warning("Upstream request failed (%s): %s", exc.status, exc)
                for out in _error_emissions(state, str(exc)):
                    yield encode_emission(out)

        return StreamingResponse(_stream(), media_type="text/event-stream", headers=CORS_HEADERS)

    # Non-streaming: run the same transcoder and fold its chunks into one response
    try:
        collected = [out async for out in emissions]
    except _UpstreamError as exc:
        logger.warning("Upstream request failed (%s): %s", exc.status, exc)
        return _error_response(exc.status, str(exc), "upstream_error")

    completion = _aggregate_chunks(state, collected)
    return JSONResponse(content=completion.model_dump(exclude_none=True), headers=CORS_HEADERS)


# ---------- Non-streaming aggregation ----------

def _aggregate_chunks(state: TranscoderState, emissions: list[Emission]) -> ChatCompletionsResponse:
    """Fold streamed chunk dicts into a single ``chat.completion`` body."""
    text: list[str] = []
    calls: dict[str, dict[str, Any]] = {}
    finish_reason = "stop"
    usage: Usage | None = None

    for out in emissions:
        if not isinstance(out, dict):
            continue
        choice = out["choices"][0]
        delta = choice["delta"]
        if isinstance(delta.get("content"), str):
            text.append(delta["content"])
        for fragment in delta.get("tool_calls", ()):
            call = calls.setdefault(
                fragment["id"],
                {"id": fragment["id"], "type": "function", "function": {"name": "", "arguments": ""}},
            )
            fn = fragment.get("function", {})
            if fn.get("name"):
                call["function"]["name"] = fn["name"]
            call["function"]["arguments"] += fn.get("arguments", "")
        if choice["finish_reason"]:
            finish_reason = choice["finish_reason"]
        if "usage" in out:
            usage = Usage(**out["usage"])

    message = ChatResponseMessage(
        role="assistant",
        content="".join(text) or None,
        tool_calls=list(calls.values()) or None,
    )
    return ChatCompletionsResponse(
        id=state.completion_id,
        object="chat.completion",
        created=state.created,
        model=state.inbound_model,
        choices=[Choice(index=0, message=message, finish_reason=finish_reason)],
        usage=usage,
    )
