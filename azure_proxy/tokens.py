"""Prompt-size estimation for Chat Completions requests.

Runs independently of the stream transcoder; the routes only log the estimate
so operators can see how large a request was before it reached Azure.
"""
from __future__ import annotations

import json
import logging
from typing import Any

import tiktoken

from .schemas import ChatCompletionsRequest, ChatMessage, Tool

logger = logging.getLogger(__name__)

FALLBACK_ENCODING = "cl100k_base"
LARGE_ENCODING = "o200k_base"

# Keep huge payloads (base64 images, documents) from dominating the estimate.
MAX_SERIALIZED_CHARS = 32_000

TOKENS_PER_MESSAGE = 4
REPLY_PRIMING_TOKENS = 3

_LARGE_MODEL_MARKERS = ("gpt-4o", "gpt-4.1", "o3", "gpt-5", "gpt5")

# Loaded encodings; None records a load that failed and is not retried.
_encodings: dict[str, Any] = {}


def select_encoding_name(model: str | None) -> str:
    normalized = (model or "").lower()
    if any(marker in normalized for marker in _LARGE_MODEL_MARKERS):
        return LARGE_ENCODING
    return FALLBACK_ENCODING


def _load(name: str) -> Any:
    if name not in _encodings:
        try:
            _encodings[name] = tiktoken.get_encoding(name)
        except Exception as exc:  # noqa: BLE001 - tiktoken fetches BPE files over the network
            logger.warning("Tokenizer encoding %s unavailable, estimates skip it: %s", name, exc)
            _encodings[name] = None
    return _encodings[name]


def get_encoding(name: str) -> Any:
    """Return the named encoding, the fallback encoding, or None when neither loads."""
    encoding = _load(name)
    if encoding is None and name != FALLBACK_ENCODING:
        encoding = _load(FALLBACK_ENCODING)
    return encoding


def _serialize(value: Any) -> str:
    text = value if isinstance(value, str) else json.dumps(value, ensure_ascii=False)
    if len(text) > MAX_SERIALIZED_CHARS:
        text = text[:MAX_SERIALIZED_CHARS] + "…"
    return text


def _count(encoding: Any, value: Any) -> int:
    if value is None:
        return 0
    text = _serialize(value)
    return len(encoding.encode(text)) if text else 0


def _content_tokens(encoding: Any, content: Any) -> int:
    if isinstance(content, str):
        return _count(encoding, content)
    if isinstance(content, list):
        total = 0
        for part in content:
            if isinstance(part, dict) and part.get("type") in ("text", "input_text", "output_text"):
                total += _count(encoding, part.get("text"))
            else:
                total += _count(encoding, part)
        return total
    return _count(encoding, content)


def count_message_tokens(encoding: Any, message: ChatMessage) -> int:
    total = TOKENS_PER_MESSAGE + _count(encoding, message.role)
    total += _content_tokens(encoding, message.content)
    for call in message.tool_calls or ():
        total += _count(encoding, {"name": call.function.name, "arguments": call.function.arguments or ""})
    if message.tool_call_id:
        total += _count(encoding, message.tool_call_id)
    return total


def count_tool_tokens(encoding: Any, tool: Tool) -> int:
    fn = tool.function
    return _count(
        encoding,
        {"name": fn.name, "description": fn.description or "", "parameters": fn.parameters},
    )


def count_request_tokens(
    req: ChatCompletionsRequest,
    backend_model: str | None = None,
    encoding_name: str | None = None,
) -> int | None:
    """Estimate the prompt tokens ``req`` will cost on the backend model.

    ``encoding_name`` overrides the guess made from the model name. Returns
    None when no tokenizer encoding could be loaded.
    """
    encoding = get_encoding(encoding_name or select_encoding_name(backend_model or req.model))
    if encoding is None:
        return None

    total = sum(count_message_tokens(encoding, m) for m in req.messages)
    total += sum(count_tool_tokens(encoding, t) for t in req.tools or ())
    if req.tool_choice is not None:
        total += _count(encoding, req.tool_choice)
    if req.messages:
        total += REPLY_PRIMING_TOKENS
    return total
