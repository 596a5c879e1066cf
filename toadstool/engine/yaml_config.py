"""YAML configuration loader.

Loads a single ``toadstool.yaml`` on top of the environment defaults
from :meth:`BridgeConfig.from_env`. Keys that are absent keep the
environment (or built-in) value.

Example YAML:
    cursor:
      command: cursor-agent
      args: ["--sandbox", "enabled"]
      model: sonnet-4.5
      mode: agent
      force: false
      command_timeout: 10

    limits:
      max_output_bytes: 51200
      tool_result_max_bytes: 51200
      backpressure_high_watermark: 128

    hooks:
      enabled: true
      transport: unix_socket        # auto | unix_socket | http
      request_timeout: 5
      permission_timeout: 30
      default_permission: allow
      timeouts:
        preToolUse: 45
      events: [sessionStart, preToolUse, beforeShellExecution, stop]
      rules_files: [.cursorrules, AGENTS.md]

    logging:
      level: DEBUG
      file: ~/.toadstool/logs/bridge.log
"""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import yaml

from .config import BridgeConfig

logger = logging.getLogger(__name__)

_VALID_TRANSPORTS = {"auto", "unix_socket", "http"}
_VALID_MODES = {"agent", "plan", "ask"}
_VALID_DECISIONS = {"allow", "deny", "ask"}


def _section(raw: dict[str, Any], name: str) -> dict[str, Any]:
    value = raw.get(name) or {}
    if not isinstance(value, dict):
        logger.warning(
            "load_yaml_config: section '%s' is not a mapping, ignoring", name
        )
        return {}
    return value


def load_yaml_config(
    path: str | Path,
    base: BridgeConfig | None = None,
) -> BridgeConfig:
    """Load and parse a YAML config file into a :class:`BridgeConfig`."""
    path = Path(path)
    logger.info(
        "load_yaml_config: attempting to load config from %s (exists=%s)",
        path, path.exists(),
    )
    try:
        with open(path, encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}
    except FileNotFoundError:
        logger.error(
            "load_yaml_config: config file not found at %s (absolute path: %s)",
            path, path.absolute(),
        )
        raise
    except yaml.YAMLError as exc:
        logger.error("load_yaml_config: YAML parse error in %s: %s", path, exc)
        raise

    if not isinstance(raw, dict):
        raise ValueError(f"{path}: top-level YAML value must be a mapping")

    config = base if base is not None else BridgeConfig.from_env()
    logger.info(
        "Parsed YAML config %s, sections: %s",
        path.name, ", ".join(sorted(raw)) if raw else "(empty)",
    )

    cursor = _section(raw, "cursor")
    if "command" in cursor:
        config.cursor_command = str(cursor["command"])
    if "args" in cursor:
        config.cursor_args = [str(a) for a in cursor["args"] or []]
    if "cwd" in cursor:
        cwd = Path(str(cursor["cwd"])).expanduser()
        if not cwd.is_absolute():
            cwd = (path.parent / cwd).resolve()
        config.cwd = str(cwd)
    if "model" in cursor:
        config.model = cursor["model"] or None
    if "mode" in cursor:
        mode = cursor["mode"] or None
        if mode is not None and mode not in _VALID_MODES:
            raise ValueError(f"{path}: cursor.mode must be one of {sorted(_VALID_MODES)}")
        config.mode = mode
    if "force" in cursor:
        config.force = bool(cursor["force"])
    if "command_timeout" in cursor:
        config.command_timeout_seconds = float(cursor["command_timeout"])
    if "disconnect_grace" in cursor:
        config.disconnect_grace_seconds = float(cursor["disconnect_grace"])
    if "spawn_max_attempts" in cursor:
        config.spawn_max_attempts = int(cursor["spawn_max_attempts"])

    limits = _section(raw, "limits")
    if "max_output_bytes" in limits:
        config.max_accumulated_text_bytes = int(limits["max_output_bytes"])
    if "tool_result_max_bytes" in limits:
        config.tool_result_max_bytes = int(limits["tool_result_max_bytes"])
    if "backpressure_high_watermark" in limits:
        config.backpressure_high_watermark = int(
            limits["backpressure_high_watermark"]
        )

    hooks = _section(raw, "hooks")
    if "enabled" in hooks:
        config.enable_hooks = bool(hooks["enabled"])
    if "transport" in hooks:
        transport = str(hooks["transport"])
        if transport not in _VALID_TRANSPORTS:
            raise ValueError(
                f"{path}: hooks.transport must be one of {sorted(_VALID_TRANSPORTS)}"
            )
        config.hook_transport = transport
    if "path" in hooks:
        config.hook_path = str(hooks["path"])
    if "request_timeout" in hooks:
        config.hook_request_timeout_seconds = float(hooks["request_timeout"])
    if "permission_timeout" in hooks:
        value = hooks["permission_timeout"]
        config.permission_timeout_seconds = (
            float(value) if value is not None else None
        )
    if "default_permission" in hooks:
        decision = str(hooks["default_permission"])
        if decision not in _VALID_DECISIONS:
            raise ValueError(
                f"{path}: hooks.default_permission must be one of {sorted(_VALID_DECISIONS)}"
            )
        config.default_permission_decision = decision
    if "max_body_bytes" in hooks:
        config.hook_max_body_bytes = int(hooks["max_body_bytes"])
    if "timeouts" in hooks:
        config.hook_timeouts = {
            str(k): int(v) for k, v in (hooks["timeouts"] or {}).items()
        }
    if "events" in hooks:
        events = hooks["events"]
        config.enabled_hooks = [str(e) for e in events] if events else None
    if "rules_files" in hooks:
        config.rules_files = [str(p) for p in hooks["rules_files"] or []]

    log_section = _section(raw, "logging")
    if "level" in log_section:
        config.log_level = str(log_section["level"]).upper()
    if "file" in log_section:
        log_file = log_section["file"]
        config.log_file = str(Path(log_file).expanduser()) if log_file else None

    return config
