"""Pydantic models for the Chat Completions dialect spoken by clients."""
from __future__ import annotations

from typing import Any, List, Optional
from pydantic import BaseModel, ConfigDict, Field


class ToolCallFunction(BaseModel):
    model_config = ConfigDict(frozen=True, extra="allow")
    name: str
    arguments: Optional[str] = None


class ToolCall(BaseModel):
    model_config = ConfigDict(frozen=True, extra="allow")
    id: str
    type: str = "function"
    function: ToolCallFunction


class ChatMessage(BaseModel):
    model_config = ConfigDict(frozen=True, extra="allow")
    role: str
    # Plain string or any structured JSON value (content parts, objects, ...)
    content: Any = None
    tool_calls: Optional[List[ToolCall]] = None
    tool_call_id: Optional[str] = None


class FunctionDefinition(BaseModel):
    model_config = ConfigDict(frozen=True, extra="allow")
    name: str
    description: Optional[str] = None
    parameters: Optional[Any] = None


class Tool(BaseModel):
    model_config = ConfigDict(frozen=True, extra="allow")
    type: str = "function"
    function: FunctionDefinition


class ChatCompletionsRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True, extra="allow")
    model: str
    messages: List[ChatMessage]
    tools: Optional[List[Tool]] = None
    tool_choice: Optional[Any] = Field(default=None, alias="tool_choice")
    user: Optional[str] = None
    stream: Optional[bool] = None


class ChatResponseMessage(BaseModel):
    role: str
    content: Optional[str] = None
    tool_calls: Optional[List[ToolCall]] = None


class Choice(BaseModel):
    index: int
    message: ChatResponseMessage
    finish_reason: Optional[str] = None


class Usage(BaseModel):
    prompt_tokens: int
    completion_tokens: int
    total_tokens: int


class ChatCompletionsResponse(BaseModel):
    id: str
    object: str
    created: int
    model: str
    choices: List[Choice]
    usage: Optional[Usage] = None


class ModelsList(BaseModel):
    object: str = "list"
    data: List[dict]
