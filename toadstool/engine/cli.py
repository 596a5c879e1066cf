"""Command-line entry point for the cursor-agent bridge.

Usage:
    toadstool status
    toadstool models
    toadstool sessions
    toadstool about
    toadstool mcp
    toadstool prompt "Add tests for the parser" --model sonnet-4.5 --mode agent
    toadstool --config toadstool.yaml --verbose prompt "..." --session <id>
"""
from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from logging.handlers import RotatingFileHandler
from typing import Any, TextIO

import yaml
from rich.console import Console
from rich.markdown import Markdown
from rich.table import Table
from rich.text import Text

from ..adapters.events import (
    AgentMessageChunk,
    StatusChanged,
    StderrChunk,
    StreamIssues,
    ToolCall,
    ToolCallUpdate,
    ToolResultTruncated,
    TranslatorError,
    event_to_dict,
)
from .config import BridgeConfig
from .cursor.connection import CursorCliConnection
from .cursor.harness import CursorCliHarness, SessionPromptRequest
from .errors import BridgeError
from .yaml_config import load_yaml_config

logger = logging.getLogger(__name__)

console = Console()
err_console = Console(stderr=True)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="toadstool",
        description="Drive the Cursor CLI agent through the toadstool bridge",
    )
    parser.add_argument(
        "--config", "-c",
        default=None,
        help="Path to a toadstool.yaml (default: environment only)",
    )
    parser.add_argument(
        "--cwd",
        default=None,
        help="Project directory for cursor-agent (default: current dir)",
    )
    parser.add_argument(
        "--log-file",
        default=None,
        help="Also write logs to this file (rotated at 2 MB)",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable debug logging",
    )

    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("status", help="Show installation and login status")
    sub.add_parser("models", help="List available models")
    sub.add_parser("sessions", help="List previous chat sessions")
    sub.add_parser("about", help="Show cursor-agent environment details")
    sub.add_parser("mcp", help="List configured MCP servers")

    prompt = sub.add_parser("prompt", help="Send one prompt and stream the reply")
    prompt.add_argument("text", help="Prompt text")
    prompt.add_argument("--model", default=None, help="Model id (see `toadstool models`)")
    prompt.add_argument(
        "--mode", default=None, choices=["agent", "plan", "ask"],
        help="Agent mode (default: cursor-agent's own default)",
    )
    prompt.add_argument("--session", default=None, help="Resume this session id")
    prompt.add_argument(
        "--force", action="store_true",
        help="Let cursor-agent run commands without asking",
    )
    prompt.add_argument(
        "--no-hooks", action="store_true",
        help="Do not install hooks or start the hook server",
    )
    prompt.add_argument(
        "--json", action="store_true",
        help="Write every event to stdout as one JSON object per line",
    )
    return parser


def _configure_logging(verbose: bool, level_name: str, log_file: str | None) -> None:
    level = logging.DEBUG if verbose else getattr(logging, level_name.upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
        datefmt="%H:%M:%S",
    )
    if log_file:
        file_handler = RotatingFileHandler(
            log_file, maxBytes=2_000_000, backupCount=5, encoding="utf-8",
        )
        file_handler.setFormatter(logging.Formatter(
            "%(asctime)s %(levelname)s %(name)s [pid=%(process)d] %(message)s"
        ))
        logging.getLogger().addHandler(file_handler)


def _load_config(args: argparse.Namespace) -> BridgeConfig:
    config = load_yaml_config(args.config) if args.config else BridgeConfig.from_env()
    if args.cwd is not None:
        config.cwd = args.cwd
    if args.log_file is not None:
        config.log_file = args.log_file
    if getattr(args, "model", None):
        config.model = args.model
    if getattr(args, "mode", None):
        config.mode = args.mode
    if getattr(args, "force", False):
        config.force = True
    if getattr(args, "no_hooks", False):
        config.enable_hooks = False
    return config


class NotificationRenderer:
    """Prints session notifications and side-channel events as they arrive."""

    def __init__(self, out: Console, err: Console) -> None:
        self._out = out
        self._err = err
        self.streamed_text = False

    def on_notification(self, event: Any) -> None:
        if isinstance(event, AgentMessageChunk):
            # The final complete message repeats the streamed deltas
            if event.is_final and self.streamed_text:
                return
            self._out.print(event.content.get("text", ""), end="", markup=False, highlight=False)
            self.streamed_text = True
        elif isinstance(event, ToolCall):
            self._out.print(Text(f"\n→ {event.title} ", style="cyan"), end="")
            detail = _tool_detail(event.raw_input)
            if detail:
                self._out.print(Text(detail, style="dim"), end="")
            self._out.print()
        elif isinstance(event, ToolCallUpdate):
            style = "green" if event.status == "completed" else "red"
            self._out.print(Text(f"  {event.status}", style=style))

    def on_event(self, event: Any) -> None:
        if isinstance(event, StderrChunk):
            logger.debug("cursor-agent stderr: %s", event.text.rstrip())
        elif isinstance(event, (StreamIssues, TranslatorError, ToolResultTruncated)):
            self._err.print(Text(f"[{event.event_type}] {_describe(event)}", style="yellow"))
        elif isinstance(event, StatusChanged) and event.error:
            self._err.print(Text(f"{event.new_status}: {event.error}", style="red"))


class JsonLinesRenderer:
    """Writes notifications and side-channel events as JSON lines."""

    def __init__(self, stream: TextIO) -> None:
        self._stream = stream

    def on_event(self, event: Any) -> None:
        self._stream.write(json.dumps(event_to_dict(event), default=str) + "\n")
        self._stream.flush()

    on_notification = on_event


def _tool_detail(raw_input: dict[str, Any]) -> str:
    for key in ("command", "path", "pattern", "query", "url"):
        value = raw_input.get(key)
        if isinstance(value, str) and value:
            return value[:120]
    return ""


def _describe(event: Any) -> str:
    fields = {
        k: v for k, v in event_to_dict(event).items()
        if k not in ("event", "session_id")
    }
    return ", ".join(f"{k}={v}" for k, v in fields.items())


async def _cmd_status(connection: CursorCliConnection) -> int:
    install = await connection.verify_installation()
    table = Table(show_header=False, box=None)
    table.add_column(style="bold")
    table.add_column()
    table.add_row("Binary", connection.command)
    if not install.installed:
        table.add_row("Installed", Text("no", style="red"))
        table.add_row("Install with", install.install_command or "")
        console.print(table)
        return 1
    table.add_row("Installed", Text("yes", style="green"))
    table.add_row("Version", install.version or "unknown")
    auth = await connection.verify_auth()
    table.add_row(
        "Authenticated",
        Text("yes", style="green") if auth.authenticated else Text("no", style="red"),
    )
    table.add_row("Method", auth.method.value)
    if auth.email:
        table.add_row("Account", auth.email)
    console.print(table)
    return 0 if auth.authenticated else 1


async def _cmd_models(connection: CursorCliConnection) -> int:
    response = await connection.list_models()
    table = Table(title="Models")
    table.add_column("ID", style="bold")
    table.add_column("Name")
    table.add_column("Tags", style="dim")
    for model in response.models:
        tags = [t for t, on in (("current", model.is_current), ("default", model.is_default)) if on]
        table.add_row(model.id, model.name, ", ".join(tags))
    console.print(table)
    return 0


async def _cmd_sessions(connection: CursorCliConnection) -> int:
    sessions = await connection.list_sessions()
    if not sessions:
        console.print("No sessions found.")
        return 0
    for session_id in sessions:
        console.print(session_id)
    return 0


async def _cmd_about(connection: CursorCliConnection) -> int:
    about = await connection.about()
    table = Table(show_header=False, box=None)
    table.add_column(style="bold")
    table.add_column()
    for key, value in about.fields.items():
        table.add_row(key, value)
    console.print(table)
    return 0


async def _cmd_mcp(connection: CursorCliConnection) -> int:
    servers = await connection.list_mcp_servers()
    table = Table(title="MCP servers")
    table.add_column("Name", style="bold")
    table.add_column("Status")
    table.add_column("Reason", style="dim")
    for server in servers:
        table.add_row(server.name, server.status, server.reason or "")
    console.print(table)
    return 0


async def _cmd_prompt(config: BridgeConfig, args: argparse.Namespace) -> int:
    if args.json:
        renderer: NotificationRenderer | JsonLinesRenderer = JsonLinesRenderer(sys.stdout)
    else:
        renderer = NotificationRenderer(console, err_console)
    harness = CursorCliHarness(
        config,
        notification_sink=renderer.on_notification,
        event_sink=renderer.on_event,
    )
    await harness.connect()
    try:
        session_id = args.session or await harness.new_session(config.cwd)
        if config.model:
            harness.set_session_model(session_id, config.model)
        if config.mode:
            harness.set_session_mode(session_id, config.mode)
        response = await harness.prompt(SessionPromptRequest(
            session_id=session_id,
            content=[{"type": "text", "text": args.text}],
        ))
    finally:
        await harness.disconnect()

    if isinstance(renderer, NotificationRenderer):
        if renderer.streamed_text:
            console.print()
        elif response.result_text:
            console.print(Markdown(response.result_text))
    err_console.print(Text(
        f"session {response.session_id} · {response.tool_call_count} tool call(s)",
        style="dim",
    ))
    return 0


async def _run(args: argparse.Namespace, config: BridgeConfig) -> int:
    if args.command == "prompt":
        return await _cmd_prompt(config, args)

    connection = CursorCliConnection(config)
    handlers = {
        "status": _cmd_status,
        "models": _cmd_models,
        "sessions": _cmd_sessions,
        "about": _cmd_about,
        "mcp": _cmd_mcp,
    }
    try:
        return await handlers[args.command](connection)
    finally:
        await connection.disconnect()


def main(argv: list[str] | None = None) -> None:
    parser = _build_parser()
    args = parser.parse_args(argv)

    _configure_logging(args.verbose, "INFO", None)
    try:
        config = _load_config(args)
    except (OSError, ValueError, yaml.YAMLError) as exc:
        err_console.print(Text(f"Error: {exc}", style="red"))
        sys.exit(2)
    if not args.verbose:
        logging.getLogger().setLevel(getattr(logging, config.log_level.upper(), logging.INFO))
    if config.log_file:
        _configure_logging(args.verbose, config.log_level, config.log_file)

    try:
        exit_code = asyncio.run(_run(args, config))
    except BridgeError as exc:
        err_console.print(Text(f"Error: {exc}", style="red"))
        sys.exit(1)
    except KeyboardInterrupt:
        err_console.print("\nInterrupted.")
        sys.exit(130)
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
