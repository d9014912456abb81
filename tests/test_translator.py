import pytest
from pydantic import ValidationError

from azure_proxy.config import ConfigurationError
from azure_proxy.schemas import ChatCompletionsRequest
from azure_proxy.translator import (
    ModelValidationError,
    build_responses_request,
    parse_reasoning_effort,
)


def _request(**fields):
    fields.setdefault("model", "gpt-high")
    fields.setdefault("messages", [{"role": "user", "content": "hi"}])
    return ChatCompletionsRequest(**fields)


@pytest.mark.parametrize(
    "model, effort",
    [
        ("gpt-high", "high"),
        ("GPT-Medium", "medium"),
        ("  gpt-LOW ", "low"),
        ("gpt-minimal", "minimal"),
    ],
)
def test_parse_reasoning_effort_accepts_supported_models(model, effort):
    assert parse_reasoning_effort(model) == effort


@pytest.mark.parametrize("model", ["gpt-5", "high", "gpt-ultra", "", None, "gpt-gpt-high", "o3-high"])
def test_parse_reasoning_effort_rejects_everything_else(model):
    with pytest.raises(ModelValidationError):
        parse_reasoning_effort(model)


def test_system_and_user_round_trip():
    body, inbound = build_responses_request(
        _request(
            model="gpt-high",
            messages=[
                {"role": "system", "content": "Be terse."},
                {"role": "user", "content": "2+2?"},
            ],
        ),
        "gpt5-deploy",
    )
    assert inbound == "gpt-high"
    assert body == {
        "model": "gpt5-deploy",
        "stream": True,
        "input": [{"role": "user", "content": [{"type": "input_text", "text": "2+2?"}]}],
        "instructions": "Be terse.",
        "reasoning": {"effort": "high"},
    }


def test_instructions_join_system_and_developer_and_skip_structured():
    body, _ = build_responses_request(
        _request(
            messages=[
                {"role": "system", "content": "One."},
                {"role": "developer", "content": [{"type": "text", "text": "ignored"}]},
                {"role": "Developer", "content": "Two."},
                {"role": "system", "content": "   "},
                {"role": "user", "content": "go"},
            ]
        ),
        "d",
    )
    assert body["instructions"] == "One.\n\nTwo."
    assert [item["role"] for item in body["input"]] == ["user"]


def test_no_instructions_key_without_system_text():
    body, _ = build_responses_request(_request(), "d")
    assert "instructions" not in body


def test_assistant_tool_calls_and_tool_results():
    body, _ = build_responses_request(
        _request(
            messages=[
                {"role": "user", "content": "add 1 and 2"},
                {
                    "role": "assistant",
                    "content": None,
                    "tool_calls": [
                        {
                            "id": "call_1",
                            "type": "function",
                            "function": {"name": "add", "arguments": '{"a":1,"b":2}'},
                        },
                        {"id": "call_2", "type": "function", "function": {"name": "noop"}},
                    ],
                },
                {"role": "tool", "tool_call_id": "call_1", "content": "3"},
                {"role": "tool", "tool_call_id": "call_2", "content": {"ok": True}},
                {"role": "tool", "content": None},
            ]
        ),
        "d",
    )
    assert body["input"] == [
        {"role": "user", "content": [{"type": "input_text", "text": "add 1 and 2"}]},
        {"role": "assistant", "content": [{"type": "output_text", "text": ""}]},
        {"type": "function_call", "call_id": "call_1", "name": "add", "arguments": '{"a":1,"b":2}'},
        {"type": "function_call", "call_id": "call_2", "name": "noop", "arguments": ""},
        {"type": "function_call_output", "status": "completed", "call_id": "call_1", "output": "3"},
        {"type": "function_call_output", "status": "completed", "call_id": "call_2", "output": {"ok": True}},
        {"type": "function_call_output", "status": "completed", "output": ""},
    ]


def test_structured_user_content_falls_back_to_json_text():
    parts = [{"type": "text", "text": "look"}, {"type": "image_url", "image_url": {"url": "x"}}]
    body, _ = build_responses_request(_request(messages=[{"role": "user", "content": parts}]), "d")
    assert body["input"][0]["content"][0]["text"] == (
        '[{"type":"text","text":"look"},{"type":"image_url","image_url":{"url":"x"}}]'
    )


def test_tools_are_flattened_and_never_strict():
    body, _ = build_responses_request(
        _request(
            tools=[
                {
                    "type": "function",
                    "function": {
                        "name": "add",
                        "description": "Add numbers",
                        "parameters": {"type": "object", "properties": {}},
                        "strict": True,
                    },
                },
                {"type": "function", "function": {"name": "bare", "description": "  "}},
            ]
        ),
        "d",
    )
    assert body["tools"] == [
        {
            "type": "function",
            "name": "add",
            "description": "Add numbers",
            "parameters": {"type": "object", "properties": {}},
            "strict": False,
        },
        {"type": "function", "name": "bare", "strict": False},
    ]


def test_tool_choice_and_user_pass_through_only_when_present():
    body, _ = build_responses_request(
        _request(tool_choice={"type": "function", "function": {"name": "add"}}, user="u-42"),
        "d",
    )
    assert body["tool_choice"] == {"type": "function", "function": {"name": "add"}}
    assert body["prompt_cache_key"] == "u-42"

    body, _ = build_responses_request(_request(tool_choice=None, user="", tools=[]), "d")
    assert "tool_choice" not in body
    assert "prompt_cache_key" not in body
    assert "tools" not in body


def test_invalid_model_fails_before_deployment_check():
    with pytest.raises(ModelValidationError):
        build_responses_request(_request(model="gpt-4o"), None)


def test_missing_deployment_is_configuration_error():
    with pytest.raises(ConfigurationError):
        build_responses_request(_request(), "  ")


def test_request_entities_are_immutable():
    req = _request()
    with pytest.raises(ValidationError):
        req.messages[0].content = "changed"
