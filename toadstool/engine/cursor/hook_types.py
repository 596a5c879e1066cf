"""Schemas for cursor-agent hook events.

Hook inputs arrive as JSON POSTed by the installed shim script; hook
outputs are returned to the shim, which prints them for cursor-agent.
Per-event fields are optional so older/newer CLI builds that omit a
field still validate; the common base fields are required.
"""
from __future__ import annotations

from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, model_validator


class HookEvent(str, Enum):
    """Hook names as they appear in ``hook_event_name`` and hooks.json."""
    SESSION_START = "sessionStart"
    SESSION_END = "sessionEnd"
    PRE_TOOL_USE = "preToolUse"
    POST_TOOL_USE = "postToolUse"
    POST_TOOL_USE_FAILURE = "postToolUseFailure"
    SUBAGENT_START = "subagentStart"
    SUBAGENT_STOP = "subagentStop"
    BEFORE_SHELL_EXECUTION = "beforeShellExecution"
    AFTER_SHELL_EXECUTION = "afterShellExecution"
    BEFORE_MCP_EXECUTION = "beforeMCPExecution"
    AFTER_MCP_EXECUTION = "afterMCPExecution"
    BEFORE_READ_FILE = "beforeReadFile"
    AFTER_FILE_EDIT = "afterFileEdit"
    BEFORE_SUBMIT_PROMPT = "beforeSubmitPrompt"
    PRE_COMPACT = "preCompact"
    STOP = "stop"
    AFTER_AGENT_RESPONSE = "afterAgentResponse"
    AFTER_AGENT_THOUGHT = "afterAgentThought"


ALL_HOOK_EVENTS: tuple[str, ...] = tuple(e.value for e in HookEvent)


class HookCategory(str, Enum):
    """Dispatch category; each has its own handler and safe default."""
    CONTEXT = "context"
    PERMISSION = "permission"
    CONTINUATION = "continuation"
    OBSERVE = "observe"


HOOK_EVENT_CATEGORY: dict[str, HookCategory] = {
    HookEvent.SESSION_START.value: HookCategory.CONTEXT,
    HookEvent.BEFORE_SUBMIT_PROMPT.value: HookCategory.CONTEXT,
    HookEvent.PRE_TOOL_USE.value: HookCategory.PERMISSION,
    HookEvent.BEFORE_SHELL_EXECUTION.value: HookCategory.PERMISSION,
    HookEvent.BEFORE_MCP_EXECUTION.value: HookCategory.PERMISSION,
    HookEvent.BEFORE_READ_FILE.value: HookCategory.PERMISSION,
    HookEvent.SUBAGENT_START.value: HookCategory.PERMISSION,
    HookEvent.STOP.value: HookCategory.CONTINUATION,
    HookEvent.SUBAGENT_STOP.value: HookCategory.CONTINUATION,
}

# Hooks whose vendor response key is "permission" rather than "decision".
PERMISSION_KEY_EVENTS = frozenset({
    HookEvent.BEFORE_SHELL_EXECUTION.value,
    HookEvent.BEFORE_MCP_EXECUTION.value,
    HookEvent.BEFORE_READ_FILE.value,
})

def hook_category(event_name: str) -> HookCategory:
    return HOOK_EVENT_CATEGORY.get(event_name, HookCategory.OBSERVE)


# ── Inputs ──


class HookInputBase(BaseModel):
    """Fields cursor-agent sends to every hook."""
    model_config = ConfigDict(extra="allow")

    conversation_id: str
    hook_event_name: str
    workspace_roots: list[str]
    generation_id: str | None = None
    model: str | None = None
    cursor_version: str | None = None
    user_email: str | None = None
    transcript_path: str | None = None


class SessionStartInput(HookInputBase):
    hook_event_name: Literal["sessionStart"]
    session_id: str | None = None
    is_background_agent: bool | None = None
    composer_mode: str | None = None


class SessionEndInput(HookInputBase):
    hook_event_name: Literal["sessionEnd"]
    session_id: str | None = None


class PreToolUseInput(HookInputBase):
    hook_event_name: Literal["preToolUse"]
    tool_name: str | None = None
    tool_input: dict[str, Any] = Field(default_factory=dict)
    tool_use_id: str | None = None
    cwd: str | None = None


class PostToolUseInput(HookInputBase):
    hook_event_name: Literal["postToolUse"]
    tool_name: str | None = None
    tool_input: dict[str, Any] = Field(default_factory=dict)
    tool_use_id: str | None = None
    tool_result: Any = None
    cwd: str | None = None


class PostToolUseFailureInput(HookInputBase):
    hook_event_name: Literal["postToolUseFailure"]
    tool_name: str | None = None
    tool_input: dict[str, Any] = Field(default_factory=dict)
    tool_use_id: str | None = None
    error: str | None = None
    cwd: str | None = None


class SubagentStartInput(HookInputBase):
    hook_event_name: Literal["subagentStart"]
    task_description: str | None = None
    subagent_id: str | None = None


class SubagentStopInput(HookInputBase):
    hook_event_name: Literal["subagentStop"]
    subagent_id: str | None = None
    result: str | None = None


class BeforeShellExecutionInput(HookInputBase):
    hook_event_name: Literal["beforeShellExecution"]
    command: str | None = None
    working_directory: str | None = None
    shell: str | None = None


class AfterShellExecutionInput(HookInputBase):
    hook_event_name: Literal["afterShellExecution"]
    command: str | None = None
    exit_code: int | None = None
    stdout: str | None = None
    stderr: str | None = None
    working_directory: str | None = None


class BeforeMCPExecutionInput(HookInputBase):
    hook_event_name: Literal["beforeMCPExecution"]
    server_name: str | None = None
    tool_name: str | None = None
    tool_input: dict[str, Any] = Field(default_factory=dict)


class AfterMCPExecutionInput(HookInputBase):
    hook_event_name: Literal["afterMCPExecution"]
    server_name: str | None = None
    tool_name: str | None = None
    tool_result: Any = None


class BeforeReadFileInput(HookInputBase):
    hook_event_name: Literal["beforeReadFile"]
    path: str | None = None


class FileEdit(BaseModel):
    old_string: str = ""
    new_string: str = ""


class AfterFileEditInput(HookInputBase):
    hook_event_name: Literal["afterFileEdit"]
    path: str | None = None
    edits: list[FileEdit] = Field(default_factory=list)


class BeforeSubmitPromptInput(HookInputBase):
    hook_event_name: Literal["beforeSubmitPrompt"]
    prompt: str | None = None


class PreCompactInput(HookInputBase):
    hook_event_name: Literal["preCompact"]
    token_count: int | None = None
    max_tokens: int | None = None


class StopInput(HookInputBase):
    hook_event_name: Literal["stop"]
    status: str | None = None
    loop_count: int | None = None


class AfterAgentResponseInput(HookInputBase):
    hook_event_name: Literal["afterAgentResponse"]
    response: str | None = None


class AfterAgentThoughtInput(HookInputBase):
    hook_event_name: Literal["afterAgentThought"]
    thought: str | None = None


HookInput = Annotated[
    Union[
        SessionStartInput,
        SessionEndInput,
        PreToolUseInput,
        PostToolUseInput,
        PostToolUseFailureInput,
        SubagentStartInput,
        SubagentStopInput,
        BeforeShellExecutionInput,
        AfterShellExecutionInput,
        BeforeMCPExecutionInput,
        AfterMCPExecutionInput,
        BeforeReadFileInput,
        AfterFileEditInput,
        BeforeSubmitPromptInput,
        PreCompactInput,
        StopInput,
        AfterAgentResponseInput,
        AfterAgentThoughtInput,
    ],
    Field(discriminator="hook_event_name"),
]

_HOOK_INPUT_ADAPTER: TypeAdapter[HookInput] = TypeAdapter(HookInput)


def parse_hook_input(payload: Any) -> HookInputBase:
    """Validate a decoded hook request body; raises ``ValidationError``."""
    return _HOOK_INPUT_ADAPTER.validate_python(payload)


# ── Outputs ──


class _HookResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class PermissionResponse(_HookResponse):
    """Answer for preToolUse, shell, MCP, read-file and subagentStart hooks."""
    decision: Literal["allow", "deny", "ask"]
    reason: str | None = None
    updated_input: dict[str, Any] | None = None

    @model_validator(mode="before")
    @classmethod
    def _accept_permission_key(cls, data: Any) -> Any:
        # Handlers may answer in the vendor's shell-hook vocabulary.
        if isinstance(data, dict) and "decision" not in data and "permission" in data:
            data = {**data, "decision": data["permission"]}
        return data


class ContextResponse(_HookResponse):
    """Answer for sessionStart / beforeSubmitPrompt hooks."""
    continue_: bool | None = Field(default=None, alias="continue")
    additional_context: str | None = None
    env: dict[str, str] | None = None
    modified_prompt: str | None = None


class ContinuationResponse(_HookResponse):
    """Answer for stop / subagentStop hooks."""
    followup_message: str | None = None


CATEGORY_RESPONSE_MODEL: dict[HookCategory, type[_HookResponse]] = {
    HookCategory.PERMISSION: PermissionResponse,
    HookCategory.CONTEXT: ContextResponse,
    HookCategory.CONTINUATION: ContinuationResponse,
}
