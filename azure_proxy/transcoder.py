"""Azure Responses SSE events → Chat Completions streaming chunks.

One :class:`TranscoderState` belongs to exactly one client connection and is
threaded through :func:`transcode` for every backend payload, in arrival
order. Each call returns a lazy sequence of chunk dicts, with the
:data:`~azure_proxy.sse.DONE` marker standing in for the end-of-stream
sentinel, so callers decide how (and whether) the output is encoded.
"""
from __future__ import annotations

import json
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Iterator, Optional, Union

from .sse import DONE

logger = logging.getLogger(__name__)

THINK_OPEN = "<think>\n\n"
THINK_CLOSE = "</think>\n\n"

Emission = Union[dict[str, Any], str]
Rule = Callable[[dict[str, Any], "TranscoderState"], Any]


@dataclass
class TranscoderState:
    inbound_model: str
    completion_id: str = field(default_factory=lambda: f"chatcmpl-{uuid.uuid4().hex}")
    created: int = field(default_factory=lambda: int(time.time()))
    role_announced: bool = False
    thinking_open: bool = False
    finished: bool = False
    item_call_ids: dict[str, str] = field(default_factory=dict)
    backend_error: Optional[str] = None


# ---------- Chunk construction ----------

def build_chunk(
    state: TranscoderState,
    *,
    content: Optional[str] = None,
    tool_call: Optional[dict[str, Any]] = None,
    finish_reason: Optional[str] = None,
    usage: Optional[dict[str, int]] = None,
) -> dict[str, Any]:
    delta: dict[str, Any] = {}
    if not state.role_announced:
        delta["role"] = "assistant"
        state.role_announced = True
    if content is not None:
        delta["content"] = content
    if tool_call is not None:
        delta["tool_calls"] = [tool_call]

    chunk: dict[str, Any] = {
        "id": state.completion_id,
        "object": "chat.completion.chunk",
        "created": state.created,
        "model": state.inbound_model,
        "choices": [{"index": 0, "delta": delta, "finish_reason": finish_reason}],
    }
    if usage is not None:
        chunk["usage"] = usage
    return chunk


def _open_think(state: TranscoderState) -> Iterator[Emission]:
    if state.thinking_open:
        return
    state.thinking_open = True
    yield build_chunk(state, content=THINK_OPEN)


def close_reasoning(state: TranscoderState) -> Iterator[Emission]:
    if not state.thinking_open:
        return
    state.thinking_open = False
    yield build_chunk(state, content=THINK_CLOSE)


def _finish(
    state: TranscoderState, reason: str, usage: Optional[dict[str, int]] = None
) -> Iterator[Emission]:
    yield from close_reasoning(state)
    chunk = build_chunk(state, finish_reason=reason, usage=usage)
    state.finished = True
    yield chunk
    yield DONE


# ---------- Field extraction rules ----------

def _nonblank(value: Any) -> Optional[str]:
    if isinstance(value, str) and value.strip():
        return value
    return None


def _item(ev: dict[str, Any]) -> dict[str, Any]:
    item = ev.get("item")
    return item if isinstance(item, dict) else {}


def _event_item_id(ev: dict[str, Any]) -> Optional[str]:
    return _nonblank(ev.get("item_id")) or _nonblank(ev.get("id")) or _nonblank(_item(ev).get("id"))


def _mapped_call_id(ev: dict[str, Any], state: TranscoderState) -> Optional[str]:
    item_id = _event_item_id(ev)
    return state.item_call_ids.get(item_id) if item_id else None


# Evaluated in order; the first rule returning a value wins.
CALL_ID_RULES: list[Rule] = [
    lambda ev, state: _nonblank(ev.get("call_id")),
    lambda ev, state: _nonblank(_item(ev).get("call_id")),
    _mapped_call_id,
    lambda ev, state: _event_item_id(ev),
]

ARGUMENTS_DELTA_RULES: list[Rule] = [
    lambda ev, state: ev.get("delta"),
    lambda ev, state: ev.get("arguments"),
    lambda ev, state: ev.get("arguments_delta"),
    lambda ev, state: _item(ev).get("delta"),
    lambda ev, state: _item(ev).get("arguments"),
]


def _first_match(rules: list[Rule], ev: dict[str, Any], state: TranscoderState) -> Any:
    for rule in rules:
        value = rule(ev, state)
        if value is not None:
            return value
    return None


def _as_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, str):
        return value
    return json.dumps(value, ensure_ascii=False, separators=(",", ":"))


def _delta_text(ev: dict[str, Any]) -> str:
    delta = ev.get("delta")
    if isinstance(delta, dict):
        delta = delta.get("text")
    return delta if isinstance(delta, str) else ""


# ---------- Event handlers ----------

def _on_output_item_added(ev: dict[str, Any], state: TranscoderState) -> Iterator[Emission]:
    item = _item(ev)
    item_type = str(item.get("type") or "").lower()

    if item_type == "reasoning":
        yield from _open_think(state)
        return

    if item_type == "function_call":
        item_id = _nonblank(item.get("id"))
        call_id = _nonblank(item.get("call_id")) or item_id
        name = _nonblank(item.get("name"))
        if item_id and call_id:
            state.item_call_ids[item_id] = call_id
        if not call_id or not name:
            return
        yield from close_reasoning(state)
        yield build_chunk(
            state,
            tool_call={
                "index": 0,
                "id": call_id,
                "type": "function",
                "function": {"name": name, "arguments": ""},
            },
        )
        return

    if item_type in ("output_text", "message"):
        yield from close_reasoning(state)


def _on_output_text_delta(ev: dict[str, Any], state: TranscoderState) -> Iterator[Emission]:
    yield from close_reasoning(state)
    text = _delta_text(ev)
    if text:
        yield build_chunk(state, content=text)


def _on_reasoning_delta(ev: dict[str, Any], state: TranscoderState) -> Iterator[Emission]:
    text = _delta_text(ev)
    if text:
        yield build_chunk(state, content=text)


def _on_arguments_delta(ev: dict[str, Any], state: TranscoderState) -> Iterator[Emission]:
    call_id = _first_match(CALL_ID_RULES, ev, state)
    arguments = _as_text(_first_match(ARGUMENTS_DELTA_RULES, ev, state))
    if not call_id or not arguments:
        return
    yield from close_reasoning(state)
    yield build_chunk(
        state,
        tool_call={
            "index": 0,
            "id": call_id,
            "type": "function",
            "function": {"arguments": arguments},
        },
    )


def _usage_from_response(response: dict[str, Any]) -> Optional[dict[str, int]]:
    usage = response.get("usage")
    if not isinstance(usage, dict):
        return None
    try:
        pt = int(usage.get("input_tokens") or usage.get("prompt_tokens") or 0)
        ct = int(usage.get("output_tokens") or usage.get("completion_tokens") or 0)
        tt = int(usage.get("total_tokens") or (pt + ct))
    except (TypeError, ValueError):
        return None
    return {"prompt_tokens": pt, "completion_tokens": ct, "total_tokens": tt}


def _on_completed(ev: dict[str, Any], state: TranscoderState) -> Iterator[Emission]:
    response = ev.get("response")
    if not isinstance(response, dict):
        response = {}
    output = response.get("output")
    finish = "stop"
    if isinstance(output, list) and any(
        isinstance(item, dict) and str(item.get("type") or "").lower() == "function_call"
        for item in output
    ):
        finish = "tool_calls"
    yield from _finish(state, finish, _usage_from_response(response))


def _failure_message(ev: dict[str, Any]) -> str:
    response = ev.get("response") if isinstance(ev.get("response"), dict) else {}
    for source in (response.get("error"), response.get("incomplete_details"), ev.get("error"), ev):
        if not isinstance(source, dict):
            continue
        text = _nonblank(source.get("message")) or _nonblank(source.get("reason"))
        if text:
            return text
    return str(ev.get("type") or "backend failure")


def _on_failure(ev: dict[str, Any], state: TranscoderState) -> Iterator[Emission]:
    # Produces no chunk; the caller decides how an unfinished stream ends.
    state.backend_error = _failure_message(ev)
    logger.warning("Backend reported %s for %s: %s", ev.get("type"), state.completion_id, state.backend_error)
    return iter(())


HANDLERS: dict[str, Callable[[dict[str, Any], TranscoderState], Iterator[Emission]]] = {
    "response.output_item.added": _on_output_item_added,
    "response.output_text.delta": _on_output_text_delta,
    "response.reasoning.summary_text.delta": _on_reasoning_delta,
    "response.reasoning_summary_text.delta": _on_reasoning_delta,
    "response.function_call.arguments.delta": _on_arguments_delta,
    "response.function_call_arguments.delta": _on_arguments_delta,
    "response.completed": _on_completed,
    "response.failed": _on_failure,
    "response.incomplete": _on_failure,
    "error": _on_failure,
}


# ---------- Entry points ----------

def transcode(state: TranscoderState, payload: str) -> Iterator[Emission]:
    """Translate one backend SSE payload into zero or more client emissions."""
    if state.finished or not payload or not payload.strip():
        return

    if payload.strip().upper() == DONE:
        state.finished = True
        yield DONE
        return

    try:
        ev = json.loads(payload)
    except json.JSONDecodeError:
        return
    if not isinstance(ev, dict):
        return

    handler = HANDLERS.get(str(ev.get("type") or "").lower())
    if handler is None:
        return
    yield from handler(ev, state)


def finish_incomplete(state: TranscoderState) -> Iterator[Emission]:
    """Terminate a stream the backend closed before ``response.completed``."""
    if state.finished:
        return
    yield from _finish(state, "stop")
