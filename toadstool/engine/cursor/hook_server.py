"""Hook IPC server.

cursor-agent runs the installed hook shim for each hook event; the shim
POSTs the hook input here and prints whatever this server answers.
Blocking hooks therefore wait on the bridge's permission, context and
continuation handlers. Every request is answered: handler timeouts,
invalid handler results and server shutdown all fall back to the
category's default response.

Routes:
    POST <hook_path>    dispatch by ``hook_event_name``
    anything else       404 (unknown path) / 405 (wrong method)
"""
from __future__ import annotations

import asyncio
import inspect
import json
import logging
import os
import shutil
import socket
import tempfile
import time
import uuid
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from typing import Any, Union

import pydantic
from aiohttp import web

from ..config import BridgeConfig, fire_event
from .hook_types import (
    CATEGORY_RESPONSE_MODEL,
    PERMISSION_KEY_EVENTS,
    ContextResponse,
    ContinuationResponse,
    HookCategory,
    HookInputBase,
    PermissionResponse,
    hook_category,
    parse_hook_input,
)

logger = logging.getLogger(__name__)

HOOK_SOCKET_ENV = "TOADSTOOL_HOOK_SOCKET"
HOOK_PATH_ENV = "TOADSTOOL_HOOK_PATH"

HookResult = Union[Mapping[str, Any], pydantic.BaseModel, None]
HookHandler = Callable[[HookInputBase], Union[Awaitable[HookResult], HookResult]]
HookObserver = Callable[[HookInputBase], None]


@dataclass
class HookEndpoint:
    """Where the running server listens."""
    transport: str  # "unix_socket" | "http"
    socket_path: str | None = None
    url: str | None = None
    path: str = "/hook"

    @property
    def address(self) -> str:
        return self.socket_path or self.url or ""

    def env(self) -> dict[str, str]:
        """Variables the hook shim needs to reach this endpoint."""
        return {HOOK_SOCKET_ENV: self.address, HOOK_PATH_ENV: self.path}


def _resolve_transport(transport: str) -> str:
    if transport == "auto":
        return "unix_socket" if hasattr(socket, "AF_UNIX") and os.name == "posix" else "http"
    if transport not in ("unix_socket", "http"):
        raise ValueError(f"Unknown hook transport: {transport!r}")
    return transport


class HookIpcServer:
    """aiohttp server answering cursor-agent hook callbacks."""

    def __init__(self, config: BridgeConfig | None = None) -> None:
        config = config or BridgeConfig()
        self._transport = _resolve_transport(config.hook_transport)
        self._hook_path = config.hook_path
        self._request_timeout = config.hook_request_timeout_seconds
        self._permission_timeout = (
            config.permission_timeout_seconds
            if config.permission_timeout_seconds is not None
            else config.hook_request_timeout_seconds
        )
        self._default_decision = config.default_permission_decision
        self._max_body_bytes = config.hook_max_body_bytes

        self._permission_handler: HookHandler | None = None
        self._context_handler: HookHandler | None = None
        self._continuation_handler: HookHandler | None = None
        self._route_handlers: dict[str, HookHandler] = {}
        self._observer: HookObserver | None = None

        self._pending: set[asyncio.Future] = set()
        self._runner: web.AppRunner | None = None
        self._socket_dir: str | None = None
        self._endpoint: HookEndpoint | None = None

        self._app = web.Application(
            middlewares=[self._request_logging_middleware],
            # +1 so a body of exactly max_body_bytes is still accepted
            client_max_size=self._max_body_bytes + 1,
        )
        self._app.router.add_route("*", "/{tail:.*}", self._handle_request)

    @property
    def app(self) -> web.Application:
        return self._app

    @property
    def endpoint(self) -> HookEndpoint | None:
        return self._endpoint

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def set_handlers(
        self,
        *,
        permission_request: HookHandler | None = None,
        context_injection: HookHandler | None = None,
        continuation: HookHandler | None = None,
        route_handlers: Mapping[str, HookHandler] | None = None,
        observer: HookObserver | None = None,
    ) -> None:
        """Register handlers; arguments left as None keep their current value."""
        if permission_request is not None:
            self._permission_handler = permission_request
        if context_injection is not None:
            self._context_handler = context_injection
        if continuation is not None:
            self._continuation_handler = continuation
        if route_handlers is not None:
            self._route_handlers.update(route_handlers)
        if observer is not None:
            self._observer = observer

    # ── Middleware ──

    @web.middleware
    async def _request_logging_middleware(self, request: web.Request, handler) -> web.StreamResponse:
        req_id = str(uuid.uuid4())[:8]
        request["req_id"] = req_id
        start = time.monotonic()
        try:
            response = await handler(request)
            elapsed_ms = (time.monotonic() - start) * 1000
            logger.info(
                "HOOK %s %s req=%s status=%s duration_ms=%.1f",
                request.method, request.path_qs, req_id,
                getattr(response, "status", "?"), elapsed_ms,
            )
            return response
        except Exception:
            elapsed_ms = (time.monotonic() - start) * 1000
            logger.exception(
                "HOOK %s %s req=%s failed duration_ms=%.1f",
                request.method, request.path_qs, req_id, elapsed_ms,
            )
            raise

    # ── Request handling ──

    async def _handle_request(self, request: web.Request) -> web.Response:
        if request.method != "POST":
            return web.json_response(
                {"error": "Method not allowed"}, status=405, headers={"Allow": "POST"},
            )
        if request.path != self._hook_path:
            return web.json_response({"error": "Not found"}, status=404)

        if request.content_length is not None and request.content_length > self._max_body_bytes:
            return self._too_large()
        try:
            body = await request.read()
        except web.HTTPRequestEntityTooLarge:
            return self._too_large()
        if len(body) > self._max_body_bytes:
            return self._too_large()

        try:
            payload = json.loads(body.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            return web.json_response({"error": f"Invalid JSON: {exc}"}, status=400)

        try:
            hook_input = parse_hook_input(payload)
        except pydantic.ValidationError as exc:
            return web.json_response(
                {"error": "Invalid hook input", "details": str(exc)}, status=400,
            )

        try:
            response = await self._dispatch(hook_input)
        except Exception as exc:
            status = getattr(exc, "status_code", None)
            if isinstance(status, int) and 400 <= status <= 599:
                logger.warning(
                    "Hook handler for %s failed with status %d: %s",
                    hook_input.hook_event_name, status, exc,
                )
                return web.json_response({"error": str(exc)}, status=status)
            logger.exception("Hook handler for %s failed", hook_input.hook_event_name)
            return web.json_response({"error": "Hook handler failed"}, status=500)
        return web.json_response(response)

    def _too_large(self) -> web.Response:
        return web.json_response(
            {"error": f"Request body exceeds {self._max_body_bytes} bytes"}, status=413,
        )

    def _default_response(self, category: HookCategory, event_name: str) -> dict[str, Any]:
        if category is HookCategory.PERMISSION:
            return self._permission_wire(
                PermissionResponse(decision=self._default_decision), event_name,
            )
        if category is HookCategory.CONTEXT:
            return ContextResponse().to_wire()
        if category is HookCategory.CONTINUATION:
            return ContinuationResponse().to_wire()
        return {}

    @staticmethod
    def _permission_wire(response: PermissionResponse, event_name: str) -> dict[str, Any]:
        wire = response.to_wire()
        if event_name in PERMISSION_KEY_EVENTS:
            wire["permission"] = wire["decision"]
        return wire

    def _handler_for(self, category: HookCategory, event_name: str) -> HookHandler | None:
        route_handler = self._route_handlers.get(event_name)
        if route_handler is not None:
            return route_handler
        return {
            HookCategory.PERMISSION: self._permission_handler,
            HookCategory.CONTEXT: self._context_handler,
            HookCategory.CONTINUATION: self._continuation_handler,
        }.get(category)

    async def _dispatch(self, hook_input: HookInputBase) -> dict[str, Any]:
        event_name = hook_input.hook_event_name
        category = hook_category(event_name)

        if category is HookCategory.OBSERVE:
            logger.debug(
                "Observed hook %s conversation=%s", event_name, hook_input.conversation_id,
            )
            fire_event(self._observer, hook_input)

        handler = self._handler_for(category, event_name)
        if handler is None:
            return self._default_response(category, event_name)

        timeout = (
            self._permission_timeout
            if category is HookCategory.PERMISSION
            else self._request_timeout
        )
        task = asyncio.ensure_future(_call_handler(handler, hook_input))
        self._pending.add(task)
        try:
            done, _ = await asyncio.wait({task}, timeout=timeout)
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            self._pending.discard(task)

        if task not in done:
            task.cancel()
            logger.warning(
                "Hook handler for %s timed out after %.3fs; using default",
                event_name, timeout,
            )
            return self._default_response(category, event_name)
        if task.cancelled():
            logger.info("Hook handler for %s cancelled; using default", event_name)
            return self._default_response(category, event_name)
        # Re-raises the handler's exception
        result = task.result()

        if category is HookCategory.OBSERVE:
            return {}
        return self._validate_result(category, event_name, result)

    def _validate_result(
        self, category: HookCategory, event_name: str, result: HookResult,
    ) -> dict[str, Any]:
        if result is None:
            return self._default_response(category, event_name)
        if isinstance(result, pydantic.BaseModel):
            result = result.model_dump(by_alias=True, exclude_none=True)
        model = CATEGORY_RESPONSE_MODEL[category]
        try:
            validated = model.model_validate(result)
        except pydantic.ValidationError as exc:
            logger.warning(
                "Invalid %s response for %s (%d errors); using default",
                category.value, event_name, exc.error_count(),
            )
            return self._default_response(category, event_name)
        if isinstance(validated, PermissionResponse):
            return self._permission_wire(validated, event_name)
        return validated.to_wire()

    # ── Lifecycle ──

    async def start(self) -> HookEndpoint:
        if self._endpoint is not None:
            return self._endpoint
        runner = web.AppRunner(self._app, access_log=None)
        await runner.setup()
        try:
            if self._transport == "unix_socket":
                self._socket_dir = tempfile.mkdtemp(prefix="toadstool-hook-")
                socket_path = os.path.join(self._socket_dir, "hook.sock")
                site = web.UnixSite(runner, socket_path)
                await site.start()
                endpoint = HookEndpoint(
                    transport="unix_socket", socket_path=socket_path, path=self._hook_path,
                )
            else:
                site = web.TCPSite(runner, "127.0.0.1", 0)
                await site.start()
                port = self._resolve_port(site, runner)
                if port is None:
                    raise RuntimeError("Hook server started but no listening socket was reported.")
                endpoint = HookEndpoint(
                    transport="http",
                    url=f"http://127.0.0.1:{port}{self._hook_path}",
                    path=self._hook_path,
                )
        except BaseException:
            await runner.cleanup()
            self._remove_socket_dir()
            raise
        self._runner = runner
        self._endpoint = endpoint
        logger.info("Hook server listening on %s (%s)", endpoint.address, endpoint.transport)
        return endpoint

    async def stop(self) -> None:
        """Answer pending requests with defaults, then close the listener."""
        pending = list(self._pending)
        for task in pending:
            task.cancel()
        if pending:
            logger.info("Hook server stopping; cancelled %d pending handler(s)", len(pending))
            await asyncio.wait(pending)
        runner, self._runner = self._runner, None
        if runner is not None:
            await runner.cleanup()
        self._remove_socket_dir()
        self._endpoint = None

    def _remove_socket_dir(self) -> None:
        socket_dir, self._socket_dir = self._socket_dir, None
        if socket_dir:
            shutil.rmtree(socket_dir, ignore_errors=True)

    @staticmethod
    def _resolve_port(site, runner) -> int | None:
        sockets = getattr(getattr(site, "_server", None), "sockets", None) or ()
        if sockets:
            return sockets[0].getsockname()[1]
        addresses = getattr(runner, "addresses", None) or ()
        if addresses:
            first = addresses[0]
            if isinstance(first, tuple) and len(first) >= 2:
                return int(first[1])
        return None


async def _call_handler(handler: HookHandler, hook_input: HookInputBase) -> HookResult:
    result = handler(hook_input)
    if inspect.isawaitable(result):
        result = await result
    return result
