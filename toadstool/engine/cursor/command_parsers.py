"""Parsers for the text output of cursor-agent management subcommands.

``models``, ``status``, ``about``, ``mcp list``, ``login``, ``logout``,
``ls`` and ``create-chat`` print human-oriented text rather than JSON;
these functions recover structured data from it.
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum

MODEL_LINE_RE = re.compile(r"^(\S+)\s+-\s+(.+?)(?:\s{2,}\((.+)\))?$")
AUTH_EMAIL_RE = re.compile(r"Logged in as\s+(\S+)")
LOGIN_EMAIL_RE = re.compile(r"(Logged in as|Authenticated as)\s+(\S+)", re.IGNORECASE)
LOGIN_BROWSER_HINT_RE = re.compile(r"(open|opening).+browser|https?://\S+", re.IGNORECASE)
LOGOUT_SUCCESS_RE = re.compile(r"(logged out|logout completed|signed out)", re.IGNORECASE)
ABOUT_LINE_RE = re.compile(r"^(.+?)\s{2,}(.+)$")
MCP_LIST_LINE_RE = re.compile(r"^([^:]+):\s*(.+?)(?:\s+\((.+)\))?$")
UUID_RE = re.compile(
    r"[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}"
)
VERSION_RE = re.compile(r"\d{4}\.\d{2}\.\d{2}-[0-9a-f]+|\d+\.\d+(?:\.\d+)?\S*")

_MODEL_LIST_PREAMBLE = ("Available models", "Tip:")


class AuthMethod(str, Enum):
    """How cursor-agent is authenticated."""
    BROWSER_LOGIN = "browser_login"
    API_KEY = "api_key"
    NONE = "none"


@dataclass
class CursorModel:
    id: str
    name: str
    is_current: bool = False
    is_default: bool = False


@dataclass
class ModelsResponse:
    models: list[CursorModel] = field(default_factory=list)
    default_model: str | None = None
    current_model: str | None = None


@dataclass
class AuthStatus:
    authenticated: bool
    method: AuthMethod = AuthMethod.NONE
    email: str | None = None


@dataclass
class AboutInfo:
    """Key/value pairs from ``cursor-agent about``."""
    fields: dict[str, str] = field(default_factory=dict)

    @property
    def cli_version(self) -> str | None:
        return self.fields.get("CLI Version")

    @property
    def model(self) -> str | None:
        return self.fields.get("Model")

    @property
    def os(self) -> str | None:
        return self.fields.get("OS")

    @property
    def terminal(self) -> str | None:
        return self.fields.get("Terminal")

    @property
    def shell(self) -> str | None:
        return self.fields.get("Shell")

    @property
    def user_email(self) -> str | None:
        return self.fields.get("User Email")


@dataclass
class McpServerStatus:
    name: str
    status: str
    reason: str | None = None


@dataclass
class AuthCommandResult:
    """Outcome of ``login`` / ``logout``."""
    success: bool
    message: str
    email: str | None = None
    requires_browser: bool = False


def _lines(text: str) -> list[str]:
    return [line.strip() for line in text.splitlines() if line.strip()]


def parse_model_line(line: str) -> CursorModel | None:
    match = MODEL_LINE_RE.match(line)
    if not match:
        return None
    model_id, name, raw_tags = match.groups()
    tags = {t.strip().lower() for t in (raw_tags or "").split(",") if t.strip()}
    return CursorModel(
        id=model_id,
        name=name.strip(),
        is_current="current" in tags,
        is_default="default" in tags,
    )


def parse_models_output(output: str) -> ModelsResponse:
    models = []
    for line in _lines(output):
        if line.startswith(_MODEL_LIST_PREAMBLE):
            continue
        model = parse_model_line(line)
        if model is not None:
            models.append(model)
    return ModelsResponse(
        models=models,
        default_model=next((m.id for m in models if m.is_default), None),
        current_model=next((m.id for m in models if m.is_current), None),
    )


def parse_status_output(
    stdout: str, stderr: str = "", env_api_key: str | None = None,
) -> AuthStatus:
    """``Logged in as <email>`` anywhere in the output, or an API key, counts."""
    match = AUTH_EMAIL_RE.search(f"{stdout}\n{stderr}")
    if match:
        return AuthStatus(
            authenticated=True, method=AuthMethod.BROWSER_LOGIN, email=match.group(1),
        )
    if env_api_key:
        return AuthStatus(authenticated=True, method=AuthMethod.API_KEY)
    return AuthStatus(authenticated=False)


def parse_about_output(output: str) -> AboutInfo:
    fields: dict[str, str] = {}
    for line in _lines(output):
        match = ABOUT_LINE_RE.match(line)
        if not match:
            continue
        key, value = match.group(1).strip(), match.group(2).strip()
        if key and value:
            fields[key] = value
    return AboutInfo(fields=fields)


def parse_mcp_list_output(output: str) -> list[McpServerStatus]:
    servers = []
    for line in _lines(output):
        match = MCP_LIST_LINE_RE.match(line)
        if not match:
            continue
        name = match.group(1).strip()
        status = match.group(2).strip()
        reason = (match.group(3) or "").strip() or None
        if name and status:
            servers.append(McpServerStatus(name=name, status=status, reason=reason))
    return servers


def parse_login_output(stdout: str, stderr: str = "") -> AuthCommandResult:
    combined = f"{stdout}\n{stderr}"
    lines = _lines(combined)
    match = LOGIN_EMAIL_RE.search(combined)
    if match:
        return AuthCommandResult(
            success=True, message=match.group(0), email=match.group(2),
        )
    if LOGIN_BROWSER_HINT_RE.search(combined):
        return AuthCommandResult(
            success=True,
            message=lines[0] if lines else "Browser login started.",
            requires_browser=True,
        )
    return AuthCommandResult(
        success=False, message=lines[0] if lines else "No login output.",
    )


def parse_logout_output(stdout: str, stderr: str = "") -> AuthCommandResult:
    combined = f"{stdout}\n{stderr}"
    lines = _lines(combined)
    if LOGOUT_SUCCESS_RE.search(combined):
        return AuthCommandResult(
            success=True, message=lines[0] if lines else "Logout completed.",
        )
    return AuthCommandResult(
        success=False, message=lines[0] if lines else "No logout output.",
    )


def extract_session_ids(output: str) -> list[str]:
    """First UUID on each line of ``ls`` output, de-duplicated in order."""
    seen: dict[str, None] = {}
    for line in _lines(output):
        match = UUID_RE.search(line)
        if match:
            seen.setdefault(match.group(0), None)
    return list(seen)


def extract_chat_id(output: str) -> str | None:
    """Chat id printed by ``create-chat``: a UUID, else the trimmed output."""
    match = UUID_RE.search(output)
    if match:
        return match.group(0)
    stripped = output.strip()
    return stripped or None


def parse_version_output(output: str) -> str | None:
    stripped = output.strip()
    if not stripped:
        return None
    match = VERSION_RE.search(stripped)
    return match.group(0) if match else _lines(stripped)[0]
