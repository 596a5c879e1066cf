import json

import pytest

from toadstool.engine.cursor.stream_parser import (
    CursorStreamParser,
    merge_text,
    truncate_utf8,
)
from toadstool.engine.cursor.stream_types import (
    AssistantMessageEvent,
    ResultEvent,
    SystemInitEvent,
    ToolCallCompletedEvent,
    ToolCallStartedEvent,
)

SESSION = "c6b62c6f-7ead-4fd6-9922-e952131177ff"


def _line(payload: dict) -> str:
    return json.dumps(payload, ensure_ascii=False) + "\n"


def _init() -> dict:
    return {
        "type": "system",
        "subtype": "init",
        "apiKeySource": "login",
        "cwd": "/tmp/project",
        "session_id": SESSION,
        "model": "Claude 4.5 Sonnet",
        "permissionMode": "default",
    }


def _assistant(text: str, timestamp_ms: float | None = 1730000000000) -> dict:
    payload = {
        "type": "assistant",
        "session_id": SESSION,
        "message": {"role": "assistant", "content": [{"type": "text", "text": text}]},
    }
    if timestamp_ms is not None:
        payload["timestamp_ms"] = timestamp_ms
    return payload


def _result(text: str = "done") -> dict:
    return {
        "type": "result",
        "subtype": "success",
        "duration_ms": 1234,
        "duration_api_ms": 1200,
        "is_error": False,
        "result": text,
        "session_id": SESSION,
        "request_id": "req-1",
    }


def _transcript() -> bytes:
    lines = [
        _line(_init()),
        _line(_assistant("Héllo ")),
        _line(_assistant("wörld 🍄")),
        _line({
            "type": "tool_call",
            "subtype": "started",
            "call_id": "call-1",
            "session_id": SESSION,
            "tool_call": {"readToolCall": {"args": {"path": "README.md"}}},
        }),
        _line({
            "type": "tool_call",
            "subtype": "completed",
            "call_id": "call-1",
            "session_id": SESSION,
            "tool_call": {
                "readToolCall": {
                    "args": {"path": "README.md"},
                    "result": {"success": {"content": "# toadstool"}},
                }
            },
        }),
        _line(_assistant("Héllo wörld 🍄", timestamp_ms=None)),
        _line(_result("Héllo wörld 🍄")),
    ]
    return "".join(lines).encode("utf-8")


def _parse_in_chunks(data: bytes, size: int) -> tuple[list, CursorStreamParser]:
    parser = CursorStreamParser()
    events = []
    for start in range(0, len(data), size):
        parser.push_chunk(data[start:start + size])
        events.extend(parser.drain_events())
    parser.end()
    events.extend(parser.drain_events())
    return events, parser


def test_init_and_result_yield_two_events() -> None:
    parser = CursorStreamParser()
    result = parser.push_chunk(_line(_init()) + _line(_result()))

    assert result.parsed_count == 2
    assert result.malformed_line_count == 0
    assert result.invalid_event_count == 0
    events = parser.drain_events()
    assert [type(e) for e in events] == [SystemInitEvent, ResultEvent]
    assert events[0].permission_mode == "default"
    assert events[1].result_text == "done"


@pytest.mark.parametrize("size", [1, 2, 3, 7, 11, 64, 4096])
def test_chunk_boundaries_do_not_change_events(size: int) -> None:
    data = _transcript()
    expected, whole = _parse_in_chunks(data, len(data))
    events, parser = _parse_in_chunks(data, size)

    assert events == expected
    assert len(events) == 7
    assert parser.get_accumulated_text(SESSION) == whole.get_accumulated_text(SESSION)
    assert parser.get_accumulated_text(SESSION).text == "Héllo wörld 🍄"


def test_code_point_split_across_chunks_is_reassembled() -> None:
    data = _line(_assistant("🍄")).encode("utf-8")
    mushroom = "🍄".encode("utf-8")
    cut = data.index(mushroom) + 2
    parser = CursorStreamParser()

    first = parser.push_chunk(data[:cut])
    second = parser.push_chunk(data[cut:])

    assert first.parsed_count == 0
    assert second.parsed_count == 1
    [event] = parser.drain_events()
    assert isinstance(event, AssistantMessageEvent)
    assert event.message.text == "🍄"


def test_malformed_and_invalid_lines_are_counted_and_skipped() -> None:
    malformed: list[str] = []
    invalid: list[object] = []
    parser = CursorStreamParser(
        on_malformed_line=lambda line, exc: malformed.append(line),
        on_invalid_event=lambda payload, exc: invalid.append(payload),
    )
    chunk = (
        "{not json\n"
        + _line({"type": "assistant", "session_id": SESSION})
        + _line({"type": "mystery"})
        + "\n   \n"
        + _line(_result())
    )

    result = parser.push_chunk(chunk)

    assert result.malformed_line_count == 1
    assert result.invalid_event_count == 2
    assert result.parsed_count == 1
    assert malformed == ["{not json"]
    assert len(invalid) == 2
    assert parser.total_malformed == 1
    assert parser.total_invalid == 2
    assert [type(e) for e in parser.drain_events()] == [ResultEvent]


def test_tool_call_without_recognised_key_is_invalid() -> None:
    parser = CursorStreamParser()
    result = parser.push_chunk(_line({
        "type": "tool_call",
        "subtype": "started",
        "call_id": "call-9",
        "session_id": SESSION,
        "tool_call": {"mystery": {}},
    }))

    assert result.invalid_event_count == 1
    assert parser.get_pending_event_count() == 0


def test_callback_failure_does_not_stop_parsing() -> None:
    def explode(line, exc):
        raise RuntimeError("consumer bug")

    parser = CursorStreamParser(on_malformed_line=explode)
    result = parser.push_chunk("garbage\n" + _line(_result()))

    assert result.malformed_line_count == 1
    assert result.parsed_count == 1


def test_end_flushes_unterminated_line() -> None:
    parser = CursorStreamParser()
    parser.push_chunk(json.dumps(_result()))
    assert parser.get_pending_event_count() == 0

    result = parser.end()

    assert result.parsed_count == 1
    assert parser.get_pending_event_count() == 1


def test_end_with_only_whitespace_returns_zero_result() -> None:
    parser = CursorStreamParser()
    parser.push_chunk("   \n  ")

    result = parser.end()

    assert result.parsed_count == 0
    assert result.malformed_line_count == 0
    assert result.invalid_event_count == 0


def test_backpressure_at_high_watermark_and_drain_resets() -> None:
    parser = CursorStreamParser(backpressure_high_watermark=128)
    result = parser.push_chunk(_line(_result()) * 127)
    assert not result.should_pause
    assert not parser.is_backpressured()

    result = parser.push_chunk(_line(_result()))
    assert result.should_pause
    assert parser.is_backpressured()
    assert parser.get_pending_event_count() == 128

    drained = parser.drain_events()
    assert len(drained) == 128
    assert parser.get_pending_event_count() == 0
    assert not parser.is_backpressured()


def test_invalid_high_watermark_rejected() -> None:
    with pytest.raises(ValueError):
        CursorStreamParser(backpressure_high_watermark=0)


def test_accumulated_text_truncation_is_monotonic() -> None:
    truncations: list[tuple[str, int, int]] = []
    parser = CursorStreamParser(
        max_accumulated_text_bytes=10,
        on_text_truncated=lambda sid, original, limit: truncations.append((sid, original, limit)),
    )

    parser.push_chunk(_line(_assistant("ab")) + _line(_assistant("cdé")))
    assert parser.get_accumulated_text(SESSION).text == "abcdé"
    assert parser.get_accumulated_text(SESSION).truncated is False

    for piece in ("fgh🍄", "more", "and more"):
        parser.push_chunk(_line(_assistant(piece)))
        accumulated = parser.get_accumulated_text(SESSION)
        assert len(accumulated.text.encode("utf-8")) <= 10
        assert accumulated.truncated is True

    assert len(truncations) == 1
    session_id, original, limit = truncations[0]
    assert session_id == SESSION
    assert original > 10
    assert limit == 10
    # The mushroom (4 bytes) cannot fit after "abcdéfgh" (9 bytes)
    assert parser.get_accumulated_text(SESSION).text == "abcdéfgh"


def test_accumulated_text_is_tracked_per_session() -> None:
    parser = CursorStreamParser()
    other = dict(_assistant("other"), session_id="other-session")
    parser.push_chunk(_line(_assistant("mine")) + _line(other))

    assert parser.get_accumulated_text(SESSION).text == "mine"
    assert parser.get_accumulated_text("other-session").text == "other"
    assert parser.get_accumulated_text("unknown").text == ""


def test_truncate_utf8_never_splits_a_code_point() -> None:
    assert truncate_utf8("héllo", 2) == "h"
    assert truncate_utf8("héllo", 3) == "hé"
    assert truncate_utf8("🍄🍄", 7) == "🍄"
    assert truncate_utf8("short", 50) == "short"
    assert truncate_utf8("abc", 0) == ""


def test_merge_text_handles_deltas_and_snapshots() -> None:
    assert merge_text("", "Hello") == "Hello"
    assert merge_text("Hello", " world") == "Hello world"
    assert merge_text("Hello", "Hello world") == "Hello world"
    # Final complete message repeats what was already streamed
    assert merge_text("Hello world", "world", is_delta=False) == "Hello world"
    # A delta that happens to match the tail is still appended
    assert merge_text("ha", "a") == "haa"


def test_tool_payload_is_normalized_at_parse_time() -> None:
    data = _transcript()
    events, _ = _parse_in_chunks(data, len(data))
    started = next(e for e in events if isinstance(e, ToolCallStartedEvent))
    completed = next(e for e in events if isinstance(e, ToolCallCompletedEvent))

    assert started.tool_payload.kind == "read"
    assert started.tool_payload.name == "read_file"
    assert started.tool_payload.args == {"path": "README.md"}
    assert not started.tool_payload.has_result
    assert completed.tool_payload.result == {"success": {"content": "# toadstool"}}
