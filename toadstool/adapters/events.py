"""Event types emitted by the agent bridge.

Two families share one base class:

- ``SessionNotification`` subclasses are the ACP-style session updates
  consumed by UI and persistence layers.
- The remaining events are side-channel signals (initialisation, prompt
  completion, truncation, errors, connection status) that are not part
  of the session transcript.

Each event has a stable ``event_type`` tag, emitted as ``event`` when the
CLI writes events as JSON lines.
"""
from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any


@dataclass
class BridgeEvent:
    """Base event from the agent bridge."""
    event_type: str = ""
    session_id: str | None = None


# ── Session notifications ──


@dataclass
class SessionNotification(BridgeEvent):
    """Base class for standardized session updates."""


@dataclass
class SessionInfoUpdate(SessionNotification):
    event_type: str = "session_info_update"
    model: str | None = None
    mode: str | None = None


@dataclass
class AgentMessageChunk(SessionNotification):
    event_type: str = "agent_message_chunk"
    content: dict[str, Any] = field(default_factory=dict)
    # True for the complete message that follows the streamed deltas
    is_final: bool = False


@dataclass
class UserMessageChunk(SessionNotification):
    event_type: str = "user_message_chunk"
    content: dict[str, Any] = field(default_factory=dict)


@dataclass
class ToolCall(SessionNotification):
    event_type: str = "tool_call"
    tool_call_id: str = ""
    title: str = ""
    kind: str = "other"
    status: str = "in_progress"
    raw_input: dict[str, Any] = field(default_factory=dict)


@dataclass
class ToolCallUpdate(SessionNotification):
    event_type: str = "tool_call_update"
    tool_call_id: str = ""
    status: str = "completed"
    raw_output: str | None = None


# ── Side-channel events ──


@dataclass
class SessionInitialized(BridgeEvent):
    event_type: str = "session_initialized"
    model: str = ""
    permission_mode: str | None = None
    cwd: str = ""


@dataclass
class PromptCompleted(BridgeEvent):
    event_type: str = "prompt_completed"
    text: str = ""
    duration_ms: float = 0.0
    success: bool = True


@dataclass
class ToolResultTruncated(BridgeEvent):
    event_type: str = "tool_result_truncated"
    tool_call_id: str = ""
    original_bytes: int = 0
    limit_bytes: int = 0


@dataclass
class TextTruncated(BridgeEvent):
    event_type: str = "text_truncated"
    original_bytes: int = 0
    limit_bytes: int = 0


@dataclass
class TranslatorError(BridgeEvent):
    event_type: str = "translator_error"
    message: str = ""
    stream_event_type: str = ""


@dataclass
class StderrChunk(BridgeEvent):
    event_type: str = "stderr_chunk"
    text: str = ""


@dataclass
class StreamIssues(BridgeEvent):
    event_type: str = "stream_issues"
    malformed_lines: int = 0
    invalid_events: int = 0


@dataclass
class StatusChanged(BridgeEvent):
    event_type: str = "status_changed"
    old_status: str = ""
    new_status: str = ""
    error: str | None = None


# ── Serialization ──


def event_to_dict(event: BridgeEvent) -> dict[str, Any]:
    """JSON-ready form of ``event``, tagged by an ``event`` key.

    Unset (``None``) fields are left out.
    """
    data = {k: v for k, v in asdict(event).items() if v is not None}
    data["event"] = data.pop("event_type", "")
    return data
