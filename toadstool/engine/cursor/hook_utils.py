"""Helpers for presenting hook requests to permission UIs."""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .hook_types import HookEvent, HookInputBase


class ToolKind(str, Enum):
    """ACP tool-call kinds."""
    READ = "read"
    EDIT = "edit"
    DELETE = "delete"
    MOVE = "move"
    SEARCH = "search"
    EXECUTE = "execute"
    THINK = "think"
    FETCH = "fetch"
    OTHER = "other"


@dataclass
class PermissionRequestMetadata:
    """What a permission prompt shows for one hook request."""
    tool_call_key: str
    title: str
    kind: ToolKind
    input: dict[str, Any] = field(default_factory=dict)


def as_non_empty_string(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    trimmed = value.strip()
    return trimmed or None


# Checked in order; the first matching substring wins.
_KIND_KEYWORDS: tuple[tuple[ToolKind, tuple[str, ...]], ...] = (
    (ToolKind.READ, ("read",)),
    (ToolKind.SEARCH, ("search", "grep", "glob")),
    (ToolKind.EDIT, ("edit", "write", "patch")),
    (ToolKind.DELETE, ("delete", "remove")),
    (ToolKind.MOVE, ("move", "rename")),
    (ToolKind.EXECUTE, ("shell", "exec", "bash")),
    (ToolKind.FETCH, ("fetch", "http")),
)


def infer_tool_kind(tool_name: str) -> ToolKind:
    normalized = tool_name.lower()
    for kind, keywords in _KIND_KEYWORDS:
        if any(word in normalized for word in keywords):
            return kind
    return ToolKind.OTHER


def normalize_file_edits(
    edits: Any, fallback_path: str | None,
) -> list[dict[str, str]]:
    """Flatten afterFileEdit edits, filling in the hook's path where missing."""
    if not isinstance(edits, list):
        return []
    normalized: list[dict[str, str]] = []
    for edit in edits:
        if hasattr(edit, "model_dump"):
            edit = edit.model_dump()
        entry: dict[str, str] = {}
        if isinstance(edit, dict):
            path = as_non_empty_string(edit.get("path")) or fallback_path
            old = as_non_empty_string(edit.get("old_string"))
            new = as_non_empty_string(edit.get("new_string"))
            if old is not None:
                entry["old_string"] = old
            if new is not None:
                entry["new_string"] = new
        else:
            path = fallback_path
        if path is not None:
            entry["path"] = path
        normalized.append(entry)
    return normalized


def map_permission_request_metadata(
    hook_input: HookInputBase,
) -> PermissionRequestMetadata:
    event = hook_input.hook_event_name

    def get(name: str) -> Any:
        return getattr(hook_input, name, None)

    if event == HookEvent.BEFORE_SHELL_EXECUTION.value:
        command = as_non_empty_string(get("command")) or "unknown"
        return PermissionRequestMetadata(
            tool_call_key=f"shell:{command}",
            title=f"Shell: {command}",
            kind=ToolKind.EXECUTE,
            input={"command": command},
        )
    if event == HookEvent.BEFORE_MCP_EXECUTION.value:
        server = as_non_empty_string(get("server_name")) or "mcp"
        tool = as_non_empty_string(get("tool_name")) or "tool"
        return PermissionRequestMetadata(
            tool_call_key=f"mcp:{server}:{tool}",
            title=f"MCP: {server}/{tool}",
            kind=ToolKind.OTHER,
            input={
                "server_name": server,
                "tool_name": tool,
                "tool_input": get("tool_input"),
            },
        )
    if event == HookEvent.BEFORE_READ_FILE.value:
        path = as_non_empty_string(get("path")) or "unknown"
        return PermissionRequestMetadata(
            tool_call_key="tool:read_file",
            title=f"Read file: {path}",
            kind=ToolKind.READ,
            input={"path": path},
        )
    if event == HookEvent.PRE_TOOL_USE.value:
        tool = as_non_empty_string(get("tool_name")) or "tool"
        return PermissionRequestMetadata(
            tool_call_key=f"tool:{tool}",
            title=tool,
            kind=infer_tool_kind(tool),
            input={"tool_name": tool, "tool_input": get("tool_input")},
        )
    return PermissionRequestMetadata(
        tool_call_key=f"permission:{event}",
        title="Permission request",
        kind=ToolKind.OTHER,
    )
