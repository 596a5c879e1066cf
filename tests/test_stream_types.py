import pydantic
import pytest

from toadstool.engine.cursor.stream_types import (
    AssistantMessageEvent,
    ResultEvent,
    SystemInitEvent,
    ToolCallCompletedEvent,
    ToolCallStartedEvent,
    UserMessageEvent,
    extract_tool_key,
    normalize_tool_name,
    normalize_tool_payload,
    parse_stream_event,
)


def test_system_init_uses_vendor_aliases() -> None:
    event = parse_stream_event({
        "type": "system",
        "subtype": "init",
        "cwd": "/work",
        "session_id": "s-1",
        "model": "GPT-5",
        "permissionMode": "default",
        "apiKeySource": "env",
    })

    assert isinstance(event, SystemInitEvent)
    assert event.permission_mode == "default"
    assert event.api_key_source == "env"


def test_user_and_assistant_messages_concatenate_text_blocks() -> None:
    message = {
        "role": "assistant",
        "content": [{"type": "text", "text": "foo"}, {"type": "text", "text": "bar"}],
    }
    assistant = parse_stream_event({"type": "assistant", "session_id": "s", "message": message})
    user = parse_stream_event({
        "type": "user",
        "session_id": "s",
        "message": {**message, "role": "user"},
    })

    assert isinstance(assistant, AssistantMessageEvent)
    assert assistant.message.text == "foobar"
    assert assistant.timestamp_ms is None
    assert isinstance(user, UserMessageEvent)


def test_tool_call_subtypes_select_the_model() -> None:
    base = {
        "type": "tool_call",
        "call_id": "c1",
        "session_id": "s",
        "tool_call": {"shellToolCall": {"args": {"command": "ls"}}},
    }

    assert isinstance(parse_stream_event({**base, "subtype": "started"}), ToolCallStartedEvent)
    assert isinstance(parse_stream_event({**base, "subtype": "completed"}), ToolCallCompletedEvent)
    with pytest.raises(pydantic.ValidationError):
        parse_stream_event({**base, "subtype": "cancelled"})


def test_result_requires_success_subtype() -> None:
    payload = {
        "type": "result",
        "subtype": "success",
        "session_id": "s",
        "duration_ms": 10,
        "is_error": True,
        "result": "boom",
    }
    event = parse_stream_event(payload)
    assert isinstance(event, ResultEvent)
    assert event.is_error is True
    assert event.result_text == "boom"

    with pytest.raises(pydantic.ValidationError):
        parse_stream_event({**payload, "subtype": "error"})


@pytest.mark.parametrize("payload", [
    {"type": "thinking", "session_id": "s"},
    {"session_id": "s"},
    [1, 2, 3],
    "assistant",
    {"type": "assistant", "session_id": "s", "message": {"role": "assistant", "content": [{"type": "image"}]}},
])
def test_unknown_or_malformed_events_are_rejected(payload) -> None:
    with pytest.raises(pydantic.ValidationError):
        parse_stream_event(payload)


@pytest.mark.parametrize("key,expected", [
    ("readToolCall", "read_file"),
    ("writeToolCall", "write_file"),
    ("editToolCall", "edit_file"),
    ("shellToolCall", "shell"),
    ("grepToolCall", "grep"),
    ("lsToolCall", "ls"),
    ("globToolCall", "glob"),
    ("todoToolCall", "todo"),
    ("deleteToolCall", "delete_file"),
    ("webSearchToolCall", "web_search"),
    ("semSearch-tool-call", "sem_search"),
])
def test_normalize_tool_name(key: str, expected: str) -> None:
    assert normalize_tool_name(key) == expected


def test_function_tool_uses_function_name_and_decodes_arguments() -> None:
    payload = normalize_tool_payload({
        "function": {"name": "lookup_issue", "arguments": '{"id": 42}'},
    })

    assert payload.kind == "function"
    assert payload.name == "lookup_issue"
    assert payload.args == {"id": 42}


def test_function_tool_keeps_undecodable_arguments_raw() -> None:
    payload = normalize_tool_payload({"function": {"arguments": "not json"}})

    assert payload.name == "unknown_function"
    assert payload.args == {"raw": "not json"}


def test_extract_tool_key_ignores_unrelated_keys() -> None:
    assert extract_tool_key({"meta": {}, "grepToolCall": {}}) == "grepToolCall"
    assert extract_tool_key({"meta": {}}) is None
    with pytest.raises(ValueError):
        normalize_tool_payload({"meta": {}})
