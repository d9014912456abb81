"""Chat Completions request → Azure Responses API request translation."""
from __future__ import annotations

import json
import re
from typing import Any, Optional

from .config import ConfigurationError
from .schemas import ChatCompletionsRequest, ChatMessage, Tool

REASONING_EFFORTS = ("high", "medium", "low", "minimal")

_MODEL_PREFIX_RE = re.compile(r"^gpt-", re.IGNORECASE)


class ModelValidationError(ValueError):
    """Raised when the inbound model does not name a supported reasoning effort."""


def parse_reasoning_effort(model: str | None) -> str:
    """Map ``gpt-{effort}`` (any case, surrounding whitespace allowed) to its effort."""
    inbound = (model or "").strip()
    effort = _MODEL_PREFIX_RE.sub("", inbound, count=1).strip().lower()
    if not _MODEL_PREFIX_RE.match(inbound) or effort not in REASONING_EFFORTS:
        raise ModelValidationError(
            f"Invalid model '{inbound}'. Allowed: gpt-high|gpt-medium|gpt-low|gpt-minimal."
        )
    return effort


def _content_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    if content is None:
        return ""
    return json.dumps(content, ensure_ascii=False, separators=(",", ":"))


def _tool_output(content: Any) -> Any:
    if content is None:
        return ""
    return content


def _message_items(message: ChatMessage, role: str) -> list[dict[str, Any]]:
    content_type = "output_text" if role == "assistant" else "input_text"
    items: list[dict[str, Any]] = [
        {
            "role": role,
            "content": [{"type": content_type, "text": _content_text(message.content)}],
        }
    ]
    for call in message.tool_calls or ():
        items.append(
            {
                "type": "function_call",
                "call_id": call.id,
                "name": call.function.name,
                "arguments": call.function.arguments or "",
            }
        )
    return items


def messages_to_input(messages: list[ChatMessage]) -> tuple[list[dict[str, Any]], str]:
    """Return Responses ``input`` items and the joined system/developer instructions."""
    input_list: list[dict[str, Any]] = []
    instructions: list[str] = []

    for m in messages:
        role = (m.role or "").strip().lower()

        if role in ("system", "developer"):
            if isinstance(m.content, str) and m.content.strip():
                instructions.append(m.content)
            continue

        if role == "tool":
            item: dict[str, Any] = {"type": "function_call_output", "status": "completed"}
            if m.tool_call_id and m.tool_call_id.strip():
                item["call_id"] = m.tool_call_id
            item["output"] = _tool_output(m.content)
            input_list.append(item)
            continue

        input_list.extend(_message_items(m, role))

    return input_list, "\n\n".join(instructions)


def tools_to_responses(tools: list[Tool]) -> list[dict[str, Any]]:
    out: list[dict[str, Any]] = []
    for t in tools:
        fn = t.function
        entry: dict[str, Any] = {"type": "function", "name": fn.name}
        if fn.description and fn.description.strip():
            entry["description"] = fn.description
        if fn.parameters is not None:
            entry["parameters"] = fn.parameters
        entry["strict"] = False
        out.append(entry)
    return out


def _has_value(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, str):
        return bool(value.strip())
    return True


def build_responses_request(
    req: ChatCompletionsRequest, deployment: Optional[str]
) -> tuple[dict[str, Any], str]:
    """Build the backend request body and return it with the inbound model name.

    Raises:
        ModelValidationError: If ``req.model`` is not ``gpt-{high|medium|low|minimal}``
        ConfigurationError: If no deployment name is configured
    """
    inbound_model = (req.model or "").strip()
    effort = parse_reasoning_effort(inbound_model)

    if not deployment or not deployment.strip():
        raise ConfigurationError("Missing AZURE_OPENAI_DEPLOYMENT.")

    input_list, instructions = messages_to_input(req.messages)

    payload: dict[str, Any] = {
        "model": deployment,
        "stream": True,
        "input": input_list,
    }
    if instructions.strip():
        payload["instructions"] = instructions
    if req.tools:
        payload["tools"] = tools_to_responses(req.tools)
    if _has_value(req.tool_choice):
        payload["tool_choice"] = req.tool_choice
    if _has_value(req.user):
        payload["prompt_cache_key"] = req.user
    payload["reasoning"] = {"effort": effort}
    return payload, inbound_model
