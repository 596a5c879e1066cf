"""Typed models for the cursor-agent NDJSON stream.

Validates the raw JSON objects emitted by
``cursor-agent -p --output-format stream-json --stream-partial-output``.
Events are discriminated on ``type`` plus ``subtype``; tool payloads are
normalized into a :class:`ToolPayload` at the parse boundary so no
consumer ever has to walk the vendor's single-key mapping itself.
"""
from __future__ import annotations

import json
import re
from typing import Annotated, Any, Literal, Union

import pydantic
from pydantic import BaseModel, ConfigDict, Discriminator, Field, Tag, TypeAdapter

# Vendor tool key -> normalized tool name
TOOL_NAME_MAP: dict[str, str] = {
    "readToolCall": "read_file",
    "writeToolCall": "write_file",
    "editToolCall": "edit_file",
    "shellToolCall": "shell",
    "grepToolCall": "grep",
    "lsToolCall": "ls",
    "globToolCall": "glob",
    "deleteToolCall": "delete_file",
    "todoToolCall": "todo",
}

FUNCTION_TOOL_KEY = "function"
_TOOL_KEY_SUFFIXES = ("ToolCall", "-tool-call")
_CAMEL_BOUNDARY_RE = re.compile(r"(?<!^)(?=[A-Z])")


def extract_tool_key(tool_call: dict[str, Any]) -> str | None:
    """Return the single vendor key that identifies the tool, if any."""
    for key in tool_call:
        if key == FUNCTION_TOOL_KEY or key.endswith(_TOOL_KEY_SUFFIXES):
            return key
    return None


def _strip_tool_suffix(key: str) -> str:
    for suffix in _TOOL_KEY_SUFFIXES:
        if key.endswith(suffix):
            return key[: -len(suffix)]
    return key


def normalize_tool_name(key: str, body: dict[str, Any] | None = None) -> str:
    """Map a vendor tool key to the name shown in tool-call titles.

    Unmapped keys lose their ``ToolCall`` suffix and are snake-cased:
    ``webSearchToolCall`` -> ``web_search``.
    """
    if key == FUNCTION_TOOL_KEY:
        name = (body or {}).get("name")
        return str(name) if name else "unknown_function"
    mapped = TOOL_NAME_MAP.get(key)
    if mapped:
        return mapped
    stem = _strip_tool_suffix(key)
    return _CAMEL_BOUNDARY_RE.sub("_", stem).replace("-", "_").lower()


class ToolPayload(BaseModel):
    """Normalized tool payload: one tag plus its arguments and result."""
    model_config = ConfigDict(frozen=True)

    key: str
    kind: str
    name: str
    args: dict[str, Any] = Field(default_factory=dict)
    result: Any = None

    @property
    def has_result(self) -> bool:
        return self.result is not None


def normalize_tool_payload(tool_call: Any) -> ToolPayload:
    """Convert the vendor's ``{"<kind>ToolCall": {...}}`` mapping."""
    if isinstance(tool_call, ToolPayload):
        return tool_call
    if not isinstance(tool_call, dict):
        raise ValueError("tool_call must be an object")
    key = extract_tool_key(tool_call)
    if key is None:
        raise ValueError(
            f"tool_call has no recognised tool key: {sorted(tool_call)}"
        )
    body = tool_call.get(key)
    if not isinstance(body, dict):
        body = {}

    args: dict[str, Any] = {}
    raw_args = body.get("args")
    if isinstance(raw_args, dict):
        args = raw_args
    elif key == FUNCTION_TOOL_KEY and "arguments" in body:
        raw = body["arguments"]
        if isinstance(raw, str):
            try:
                decoded = json.loads(raw)
            except json.JSONDecodeError:
                decoded = None
            args = decoded if isinstance(decoded, dict) else {"raw": raw}
        elif isinstance(raw, dict):
            args = raw

    return ToolPayload(
        key=key,
        kind=_strip_tool_suffix(key),
        name=normalize_tool_name(key, body),
        args=args,
        result=body.get("result"),
    )


# ── Content ──


class TextBlock(BaseModel):
    type: Literal["text"]
    text: str


class VendorMessage(BaseModel):
    role: Literal["user", "assistant", "system"]
    content: list[TextBlock]

    @property
    def text(self) -> str:
        return "".join(block.text for block in self.content)


class _StreamModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


# ── Events ──


class SystemInitEvent(_StreamModel):
    type: Literal["system"]
    subtype: Literal["init"]
    cwd: str
    session_id: str
    model: str
    permission_mode: str | None = Field(default=None, alias="permissionMode")
    api_key_source: str | None = Field(default=None, alias="apiKeySource")


class UserMessageEvent(_StreamModel):
    type: Literal["user"]
    session_id: str
    message: VendorMessage


class AssistantMessageEvent(_StreamModel):
    type: Literal["assistant"]
    session_id: str
    message: VendorMessage
    # Present on streaming deltas, absent on the final complete message
    timestamp_ms: float | None = None


class _ToolCallEvent(_StreamModel):
    type: Literal["tool_call"]
    call_id: str
    session_id: str
    tool_payload: ToolPayload = Field(alias="tool_call")
    model_call_id: str | None = None
    timestamp_ms: float | None = None

    @pydantic.field_validator("tool_payload", mode="before")
    @classmethod
    def _normalize_payload(cls, value: Any) -> ToolPayload:
        return normalize_tool_payload(value)


class ToolCallStartedEvent(_ToolCallEvent):
    subtype: Literal["started"]


class ToolCallCompletedEvent(_ToolCallEvent):
    subtype: Literal["completed"]


class ResultEvent(_StreamModel):
    type: Literal["result"]
    subtype: Literal["success"]
    session_id: str
    duration_ms: float
    duration_api_ms: float | None = None
    is_error: bool
    result_text: str = Field(alias="result")
    request_id: str | None = None


def _event_tag(value: Any) -> str | None:
    if isinstance(value, dict):
        event_type = value.get("type")
        subtype = value.get("subtype")
    else:
        event_type = getattr(value, "type", None)
        subtype = getattr(value, "subtype", None)
    if event_type in ("system", "tool_call", "result"):
        return f"{event_type}:{subtype}"
    return event_type if isinstance(event_type, str) else None


StreamEvent = Annotated[
    Union[
        Annotated[SystemInitEvent, Tag("system:init")],
        Annotated[UserMessageEvent, Tag("user")],
        Annotated[AssistantMessageEvent, Tag("assistant")],
        Annotated[ToolCallStartedEvent, Tag("tool_call:started")],
        Annotated[ToolCallCompletedEvent, Tag("tool_call:completed")],
        Annotated[ResultEvent, Tag("result:success")],
    ],
    Discriminator(_event_tag),
]

_STREAM_EVENT_ADAPTER: TypeAdapter[StreamEvent] = TypeAdapter(StreamEvent)


def parse_stream_event(payload: Any) -> StreamEvent:
    """Validate a decoded JSON value; raises ``pydantic.ValidationError``."""
    return _STREAM_EVENT_ADAPTER.validate_python(payload)
