"""Harness adapter exposing cursor-agent through one session interface.

Ties the pieces together:

    connect()  -> verify binary + auth, start the hook server, install
                  hooks.json, inject TOADSTOOL_HOOK_SOCKET
    prompt()   -> spawn one ``cursor-agent -p`` run, translate its events
                  into session notifications, return the final result
    disconnect() -> stop children, stop the hook server, restore hooks.json

Status transitions (``disconnected -> connecting -> connected``, or
``error``) are published to the event sink as :class:`StatusChanged`.
"""
from __future__ import annotations

import logging
import os
import secrets
from collections.abc import Sequence
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

from ...adapters.events import SessionInfoUpdate, StatusChanged
from ..backoff import retry_with_backoff
from ..config import BridgeConfig, EventSink, fire_event
from ..errors import (
    BridgeError,
    CursorAuthRequiredError,
    CursorNotInstalledError,
    CursorPromptError,
    HarnessStateError,
    PromptAlreadyActiveError,
)
from .command_parsers import AuthStatus, ModelsResponse
from .connection import (
    INSTALL_COMMAND,
    LOGIN_COMMAND,
    CursorCliConnection,
    PromptRequest,
    resolve_cli_mode,
)
from .hook_server import HOOK_PATH_ENV, HOOK_SOCKET_ENV, HookHandler, HookIpcServer, HookObserver
from .hook_types import HookEvent, HookInputBase
from .hooks_config import HookInstallation, cleanup_hooks, install_hooks
from .translator import CursorToAcpTranslator

logger = logging.getLogger(__name__)

LOCAL_SESSION_PREFIX = "cursor-"


class ConnectionStatus(str, Enum):
    """Harness connection state."""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ERROR = "error"


@dataclass
class SessionPromptRequest:
    """A prompt addressed to one session; content is a list of ACP blocks."""
    session_id: str
    content: list[dict[str, Any]] = field(default_factory=list)

    @property
    def text(self) -> str | None:
        for block in self.content:
            if block.get("type") == "text" and isinstance(block.get("text"), str):
                return block["text"]
        return None


@dataclass
class PromptResponse:
    stop_reason: str = "end_turn"
    session_id: str | None = None
    result_text: str | None = None
    tool_call_count: int = 0


class CursorCliHarness:
    """cursor-agent harness: one connection, one hook server, one prompt at a time."""

    def __init__(
        self,
        config: BridgeConfig | None = None,
        *,
        connection: CursorCliConnection | None = None,
        hook_server: HookIpcServer | None = None,
        notification_sink: EventSink | None = None,
        event_sink: EventSink | None = None,
        permission_handler: HookHandler | None = None,
        context_handler: HookHandler | None = None,
        continuation_handler: HookHandler | None = None,
        hook_observer: HookObserver | None = None,
    ) -> None:
        self._config = config or BridgeConfig()
        self._connection = connection or CursorCliConnection(self._config)
        self._hook_server = hook_server
        if self._hook_server is None and self._config.enable_hooks:
            self._hook_server = HookIpcServer(self._config)
        self._notification_sink = notification_sink
        self._event_sink = event_sink
        self._permission_handler = permission_handler
        self._context_handler = context_handler
        self._continuation_handler = continuation_handler
        self._hook_observer = hook_observer

        self._status = ConnectionStatus.DISCONNECTED
        self._installation: HookInstallation | None = None
        self._prompt_active = False
        self._session_models: dict[str, str] = {}
        self._session_modes: dict[str, str] = {}
        # Local fallback ids -> vendor ids learned from system-init
        self._vendor_sessions: dict[str, str] = {}

    @property
    def status(self) -> ConnectionStatus:
        return self._status

    @property
    def connection(self) -> CursorCliConnection:
        return self._connection

    @property
    def hook_server(self) -> HookIpcServer | None:
        return self._hook_server

    @property
    def installation(self) -> HookInstallation | None:
        return self._installation

    def _set_status(self, status: ConnectionStatus, error: str | None = None) -> None:
        old, self._status = self._status, status
        if old is status:
            return
        logger.info("Harness status %s -> %s", old.value, status.value)
        fire_event(self._event_sink, StatusChanged(
            old_status=old.value, new_status=status.value, error=error,
        ))

    # ── Lifecycle ──

    async def connect(self) -> None:
        if self._status is ConnectionStatus.CONNECTED:
            return
        if self._status is ConnectionStatus.CONNECTING:
            raise HarnessStateError("connect", self._status.value)
        self._set_status(ConnectionStatus.CONNECTING)
        try:
            await self._connect()
        except Exception as exc:
            for teardown_error in await self._teardown():
                logger.warning("connect: teardown after failure raised %s", teardown_error)
            self._set_status(ConnectionStatus.ERROR, error=str(exc))
            raise
        self._set_status(ConnectionStatus.CONNECTED)

    async def _connect(self) -> None:
        install = await self._connection.verify_installation()
        if not install.installed:
            raise CursorNotInstalledError(self._connection.command, INSTALL_COMMAND)
        logger.info("cursor-agent found (version=%s)", install.version)

        auth = await self._connection.verify_auth()
        if not auth.authenticated:
            raise CursorAuthRequiredError(LOGIN_COMMAND)
        logger.info("cursor-agent authenticated (method=%s)", auth.method.value)

        if self._hook_server is not None:
            self._register_default_handlers()
            endpoint = await self._hook_server.start()
            endpoint_env = endpoint.env()
            self._connection.merge_env(endpoint_env)
            self._installation = install_hooks(
                self._config.cwd,
                endpoint_env,
                timeouts=self._config.hook_timeouts,
                enabled=self._config.enabled_hooks,
            )
        self._connection.install_signal_handlers()

    async def disconnect(self) -> None:
        """Tear everything down; every step runs even if an earlier one fails."""
        errors = await self._teardown()
        self._set_status(ConnectionStatus.DISCONNECTED)
        if errors:
            raise errors[0]

    async def _teardown(self) -> list[Exception]:
        errors: list[Exception] = []
        try:
            await self._connection.disconnect()
        except Exception as exc:
            logger.exception("disconnect: connection teardown failed")
            errors.append(exc)
        if self._hook_server is not None:
            try:
                await self._hook_server.stop()
            except Exception as exc:
                logger.exception("disconnect: hook server stop failed")
                errors.append(exc)
        installation, self._installation = self._installation, None
        if installation is not None:
            try:
                cleanup_hooks(installation)
            except Exception as exc:
                logger.exception("disconnect: hook cleanup failed")
                errors.append(exc)
        self._connection.remove_env(HOOK_SOCKET_ENV, HOOK_PATH_ENV)
        return errors

    # ── Hook handlers ──

    def _register_default_handlers(self) -> None:
        assert self._hook_server is not None
        self._hook_server.set_handlers(
            permission_request=self._permission_handler or self._default_permission,
            context_injection=self._context_handler or self._inject_context,
            continuation=self._continuation_handler or self._default_continuation,
            observer=self._hook_observer,
        )

    async def _default_permission(self, hook_input: HookInputBase) -> dict[str, Any]:
        return {"decision": self._config.default_permission_decision}

    async def _default_continuation(self, hook_input: HookInputBase) -> dict[str, Any]:
        return {}

    async def _inject_context(self, hook_input: HookInputBase) -> dict[str, Any]:
        if hook_input.hook_event_name != HookEvent.SESSION_START.value:
            return {}
        rules = self._read_rules_files()
        return {"additional_context": rules} if rules else {}

    def _read_rules_files(self) -> str:
        parts = []
        for name in self._config.rules_files:
            path = Path(name)
            if not path.is_absolute():
                path = Path(self._config.cwd) / path
            try:
                text = path.read_text(encoding="utf-8").strip()
            except OSError as exc:
                logger.warning("Skipping rules file %s: %s", path, exc)
                continue
            if text:
                parts.append(text)
        return "\n\n".join(parts)

    # ── Sessions ──

    async def new_session(self, cwd: str | None = None) -> str:
        if cwd and os.path.abspath(cwd) != os.path.abspath(self._config.cwd):
            logger.debug("new_session: cwd %s differs from harness cwd %s", cwd, self._config.cwd)
        try:
            return await self._connection.create_chat()
        except BridgeError as exc:
            # The vendor id arrives later with system-init
            session_id = f"{LOCAL_SESSION_PREFIX}{secrets.token_hex(8)}"
            logger.warning("create-chat failed (%s); using local session id %s", exc, session_id)
            return session_id

    def set_session_model(self, session_id: str, model_id: str) -> None:
        self._session_models[session_id] = model_id
        fire_event(self._notification_sink, SessionInfoUpdate(
            session_id=session_id, model=model_id, mode=self._session_modes.get(session_id),
        ))

    def set_session_mode(self, session_id: str, mode: str) -> None:
        cli_mode = resolve_cli_mode(mode)
        if cli_mode is None:
            raise ValueError(f"Unsupported mode {mode!r}; expected agent, plan or ask")
        self._session_modes[session_id] = cli_mode.value
        fire_event(self._notification_sink, SessionInfoUpdate(
            session_id=session_id, model=self._session_models.get(session_id), mode=cli_mode.value,
        ))

    def _resume_id(self, session_id: str) -> str | None:
        if session_id in self._vendor_sessions:
            return self._vendor_sessions[session_id]
        if session_id.startswith(LOCAL_SESSION_PREFIX):
            return None
        return session_id

    # ── Prompting ──

    async def prompt(self, request: SessionPromptRequest) -> PromptResponse:
        if self._status is not ConnectionStatus.CONNECTED:
            raise HarnessStateError("prompt", self._status.value)
        if self._prompt_active or self._connection.is_prompt_active:
            raise PromptAlreadyActiveError()
        text = request.text
        if text is None:
            raise ValueError("Prompt has no text content block")

        self._prompt_active = True
        try:
            return await self._run_prompt(request, text)
        finally:
            self._prompt_active = False

    async def _run_prompt(self, request: SessionPromptRequest, text: str) -> PromptResponse:
        session_id = request.session_id
        prompt_request = PromptRequest(
            message=text,
            session_id=self._resume_id(session_id),
            model=self._session_models.get(session_id, self._config.model),
            mode=self._session_modes.get(session_id, self._config.mode),
            force=self._config.force,
            api_key=self._config.api_key,
            workspace=os.path.abspath(self._config.cwd),
        )
        translator = CursorToAcpTranslator(
            tool_result_max_bytes=self._config.tool_result_max_bytes,
            notification_sink=self._notification_sink,
            event_sink=self._event_sink,
        )

        result = await retry_with_backoff(
            lambda: self._connection.spawn_prompt(
                prompt_request,
                on_event=translator.translate,
                on_stderr=self._event_sink,
                on_error=self._event_sink,
            ),
            max_attempts=self._config.spawn_max_attempts,
            base_seconds=self._config.backoff_base_seconds,
            cap_seconds=self._config.backoff_cap_seconds,
        )

        if not result.has_result and (result.exit_code not in (0, None) or result.signal):
            raise CursorPromptError(result.exit_code, result.signal, result.stderr)

        if result.session_id and result.session_id != session_id:
            self._vendor_sessions[session_id] = result.session_id
        return PromptResponse(
            stop_reason="end_turn",
            session_id=result.session_id or session_id,
            result_text=result.result_text,
            tool_call_count=translator.total_tool_calls,
        )

    # ── Pass-through management ──

    async def authenticate(self) -> AuthStatus:
        return await self._connection.verify_auth()

    async def list_models(self) -> ModelsResponse:
        return await self._connection.list_models()

    async def list_sessions(self) -> Sequence[str]:
        return await self._connection.list_sessions()
