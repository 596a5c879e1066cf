from __future__ import annotations

import json
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from rich.console import Console

from toadstool.adapters.events import AgentMessageChunk, ToolCall, ToolCallUpdate, ToolResultTruncated
from toadstool.engine import cli
from toadstool.engine.cursor.command_parsers import CursorModel, ModelsResponse
from toadstool.engine.cursor.connection import CursorCliConnection, InstallInfo
from toadstool.engine.cursor.harness import PromptResponse


def _run_main(argv: list[str]) -> int:
    with pytest.raises(SystemExit) as exc_info:
        cli.main(argv)
    return exc_info.value.code


def test_status_reports_missing_binary(capsys) -> None:
    with patch.object(
        CursorCliConnection, "verify_installation",
        new=AsyncMock(return_value=InstallInfo(
            installed=False, command="cursor-agent", install_command="curl -fsSL https://cursor.com/install | bash",
        )),
    ):
        code = _run_main(["status"])

    assert code == 1
    assert "cursor.com/install" in capsys.readouterr().out


def test_models_lists_table(capsys) -> None:
    response = ModelsResponse(models=[
        CursorModel(id="gpt-5", name="GPT-5", is_default=True),
        CursorModel(id="sonnet-4.5", name="Claude 4.5 Sonnet", is_current=True),
    ])
    with patch.object(CursorCliConnection, "list_models", new=AsyncMock(return_value=response)):
        code = _run_main(["models"])

    out = capsys.readouterr().out
    assert code == 0
    assert "gpt-5" in out
    assert "sonnet-4.5" in out


def test_missing_config_file_exits_with_usage_error(tmp_path) -> None:
    assert _run_main(["--config", str(tmp_path / "nope.yaml"), "status"]) == 2


def test_prompt_drives_harness(capsys) -> None:
    harness = MagicMock()
    harness.connect = AsyncMock()
    harness.new_session = AsyncMock(return_value="sess-1")
    harness.prompt = AsyncMock(return_value=PromptResponse(
        session_id="sess-1", result_text="All **done**", tool_call_count=2,
    ))
    harness.disconnect = AsyncMock()

    with patch.object(cli, "CursorCliHarness", return_value=harness):
        code = _run_main(["prompt", "write tests", "--model", "gpt-5", "--mode", "plan"])

    assert code == 0
    harness.set_session_model.assert_called_once_with("sess-1", "gpt-5")
    harness.set_session_mode.assert_called_once_with("sess-1", "plan")
    [request], _ = harness.prompt.await_args
    assert request.text == "write tests"
    harness.disconnect.assert_awaited_once()
    captured = capsys.readouterr()
    assert "All" in captured.out
    assert "2 tool call(s)" in captured.err


def test_prompt_disconnects_when_prompt_fails() -> None:
    harness = MagicMock()
    harness.connect = AsyncMock()
    harness.new_session = AsyncMock(return_value="sess-1")
    harness.prompt = AsyncMock(side_effect=cli.BridgeError("cursor-agent exited with code 1"))
    harness.disconnect = AsyncMock()

    with patch.object(cli, "CursorCliHarness", return_value=harness):
        code = _run_main(["prompt", "hello", "--session", "existing"])

    assert code == 1
    harness.new_session.assert_not_awaited()
    harness.disconnect.assert_awaited_once()


def test_renderer_skips_final_message_after_streaming() -> None:
    out = Console(record=True, width=120)
    renderer = cli.NotificationRenderer(out, Console(record=True))

    renderer.on_notification(AgentMessageChunk(content={"type": "text", "text": "Hel"}))
    renderer.on_notification(AgentMessageChunk(content={"type": "text", "text": "lo"}))
    renderer.on_notification(AgentMessageChunk(content={"type": "text", "text": "Hello"}, is_final=True))
    renderer.on_notification(ToolCall(tool_call_id="t", title="shell", raw_input={"command": "ls"}))
    renderer.on_notification(ToolCallUpdate(tool_call_id="t", status="failed"))

    text = out.export_text()
    assert text.startswith("Hello\n")
    assert text.count("Hello") == 1
    assert "shell" in text and "ls" in text
    assert "failed" in text


def test_prompt_json_writes_one_event_per_line(capsys) -> None:
    harness = MagicMock()
    harness.connect = AsyncMock()
    harness.new_session = AsyncMock(return_value="sess-1")
    harness.disconnect = AsyncMock()

    def build(config, **sinks):
        async def prompt(request):
            sinks["notification_sink"](AgentMessageChunk(
                session_id="sess-1", content={"type": "text", "text": "hi"},
            ))
            sinks["event_sink"](ToolResultTruncated(
                session_id="sess-1", tool_call_id="t1", original_bytes=26, limit_bytes=8,
            ))
            return PromptResponse(session_id="sess-1", result_text="hi", tool_call_count=0)

        harness.prompt = AsyncMock(side_effect=prompt)
        return harness

    with patch.object(cli, "CursorCliHarness", side_effect=build):
        code = _run_main(["prompt", "hello", "--json"])

    assert code == 0
    lines = [json.loads(line) for line in capsys.readouterr().out.splitlines()]
    assert [line["event"] for line in lines] == ["agent_message_chunk", "tool_result_truncated"]
    assert lines[0]["content"] == {"type": "text", "text": "hi"}
    assert lines[1]["original_bytes"] == 26
