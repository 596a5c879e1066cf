"""Configuration loaded from environment variables.

All settings have sensible defaults. Override via TOADSTOOL_* env vars.
"""
from __future__ import annotations

import logging
import os
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger(__name__)

# Default UTF-8 byte ceilings for accumulated assistant text and for a
# single tool result before truncation.
DEFAULT_MAX_OUTPUT_BYTES = 50 * 1024
DEFAULT_BACKPRESSURE_HIGH_WATERMARK = 128

# Synchronous sink for bridge events (notifications and side-channel
# signals). Signature: def sink(event) -> None
EventSink = Callable[[Any], None]


def fire_event(sink: EventSink | None, event: Any) -> None:
    """Deliver an event to a sink if set, logging sink failures.

    A misbehaving consumer must never break parsing or translation of
    the rest of the stream.
    """
    if sink is None:
        return
    try:
        sink(event)
    except Exception:
        logger.exception(
            "fire_event: sink raised for %s",
            getattr(event, "event_type", type(event).__name__),
        )


def _env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    return raw.lower() in {"1", "true", "yes", "on"}


@dataclass
class BridgeConfig:
    """Agent bridge configuration."""

    # cursor-agent invocation
    cursor_command: str = "cursor-agent"
    cursor_args: list[str] = field(default_factory=list)
    cwd: str = "."
    model: str | None = None
    # agent | plan | ask
    mode: str | None = None
    force: bool = False
    # Forwarded as --api-key when set; otherwise CURSOR_API_KEY from env.
    api_key: str | None = None

    # Timeouts for one-shot management commands and for the SIGTERM to
    # SIGKILL escalation on disconnect.
    command_timeout_seconds: float = 10.0
    disconnect_grace_seconds: float = 5.0

    # Stream parsing / translation limits
    max_accumulated_text_bytes: int = DEFAULT_MAX_OUTPUT_BYTES
    tool_result_max_bytes: int = DEFAULT_MAX_OUTPUT_BYTES
    backpressure_high_watermark: int = DEFAULT_BACKPRESSURE_HIGH_WATERMARK
    stderr_buffer_bytes: int = 64 * 1024

    # Retry policy for retryable spawn failures
    spawn_max_attempts: int = 3
    backoff_base_seconds: float = 0.25
    backoff_cap_seconds: float = 5.0

    # Hook IPC server
    enable_hooks: bool = True
    # auto | unix_socket | http
    hook_transport: str = "auto"
    hook_path: str = "/hook"
    hook_request_timeout_seconds: float = 5.0
    # None means "same as hook_request_timeout_seconds".
    permission_timeout_seconds: float | None = None
    default_permission_decision: str = "allow"
    hook_max_body_bytes: int = 1024 * 1024
    # Per-event timeout overrides written into hooks.json (seconds).
    hook_timeouts: dict[str, int] = field(default_factory=dict)
    # Subset of hook events to install; None installs all.
    enabled_hooks: list[str] | None = None
    # Project rule files concatenated into sessionStart context.
    rules_files: list[str] = field(default_factory=list)

    # Logging
    log_level: str = "INFO"
    log_file: str | None = None

    @classmethod
    def from_env(cls) -> BridgeConfig:
        """Load configuration from TOADSTOOL_* environment variables."""
        toad_vars = {
            k: v for k, v in os.environ.items() if k.startswith("TOADSTOOL_")
        }
        if toad_vars:
            logger.info(
                "BridgeConfig.from_env: TOADSTOOL_* env overrides: %s",
                ", ".join(sorted(toad_vars)),
            )
        else:
            logger.debug(
                "BridgeConfig.from_env: no TOADSTOOL_* env vars set, using defaults"
            )

        raw_args = os.getenv("TOADSTOOL_CURSOR_ARGS", "")
        raw_permission_timeout = os.getenv("TOADSTOOL_PERMISSION_TIMEOUT")
        raw_rules = os.getenv("TOADSTOOL_RULES_FILES", "")

        config = cls(
            cursor_command=os.getenv(
                "TOADSTOOL_CURSOR_COMMAND", cls.cursor_command
            ),
            cursor_args=raw_args.split(),
            cwd=os.getenv("TOADSTOOL_CWD", cls.cwd),
            model=os.getenv("TOADSTOOL_CURSOR_MODEL") or None,
            mode=os.getenv("TOADSTOOL_CURSOR_MODE") or None,
            force=_env_flag("TOADSTOOL_CURSOR_FORCE", cls.force),
            command_timeout_seconds=float(os.getenv(
                "TOADSTOOL_COMMAND_TIMEOUT", str(cls.command_timeout_seconds)
            )),
            disconnect_grace_seconds=float(os.getenv(
                "TOADSTOOL_DISCONNECT_GRACE",
                str(cls.disconnect_grace_seconds),
            )),
            max_accumulated_text_bytes=int(os.getenv(
                "TOADSTOOL_MAX_OUTPUT_BYTES",
                str(cls.max_accumulated_text_bytes),
            )),
            tool_result_max_bytes=int(os.getenv(
                "TOADSTOOL_TOOL_RESULT_MAX_BYTES",
                str(cls.tool_result_max_bytes),
            )),
            backpressure_high_watermark=int(os.getenv(
                "TOADSTOOL_BACKPRESSURE_HIGH_WATERMARK",
                str(cls.backpressure_high_watermark),
            )),
            spawn_max_attempts=int(os.getenv(
                "TOADSTOOL_SPAWN_MAX_ATTEMPTS", str(cls.spawn_max_attempts)
            )),
            enable_hooks=_env_flag("TOADSTOOL_ENABLE_HOOKS", cls.enable_hooks),
            hook_transport=os.getenv(
                "TOADSTOOL_HOOK_TRANSPORT", cls.hook_transport
            ),
            hook_request_timeout_seconds=float(os.getenv(
                "TOADSTOOL_HOOK_TIMEOUT",
                str(cls.hook_request_timeout_seconds),
            )),
            permission_timeout_seconds=(
                float(raw_permission_timeout)
                if raw_permission_timeout else None
            ),
            default_permission_decision=os.getenv(
                "TOADSTOOL_DEFAULT_PERMISSION", cls.default_permission_decision
            ),
            rules_files=[p for p in raw_rules.split(os.pathsep) if p],
            log_level=os.getenv("TOADSTOOL_LOG_LEVEL", cls.log_level),
            log_file=os.getenv("TOADSTOOL_LOG_FILE") or None,
        )
        logger.info(
            "BridgeConfig.from_env: command=%s cwd=%s hooks=%s transport=%s",
            config.cursor_command, config.cwd,
            config.enable_hooks, config.hook_transport,
        )
        return config
