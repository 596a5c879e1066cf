"""Install and remove the cursor-agent hook configuration.

``install_hooks`` writes a small Python shim under ``.toadstool/hooks/``
and points every enabled hook event in ``.cursor/hooks.json`` at it.
An existing hooks.json is merged (user entries first) and its exact
bytes are kept both in memory and in a sidecar backup file, so
``cleanup_hooks`` can restore it byte-for-byte and a crashed run can be
undone by ``recover_stale_installation`` on the next install.
"""
from __future__ import annotations

import json
import logging
import shlex
import sys
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .hook_types import ALL_HOOK_EVENTS

logger = logging.getLogger(__name__)

HOOKS_DIR = Path(".toadstool") / "hooks"
SHIM_NAME = "toadstool-hook.py"
# Any hooks.json command containing this is one of ours
SHIM_MARKER = "toadstool-hook"
HOOKS_JSON = Path(".cursor") / "hooks.json"
BACKUP_SUFFIX = ".toadstool-backup"
HOOKS_JSON_VERSION = 1

DEFAULT_HOOK_TIMEOUTS: dict[str, int] = {
    "sessionStart": 10,
    "preToolUse": 30,
    "beforeShellExecution": 60,
    "beforeMCPExecution": 30,
    "beforeReadFile": 10,
    "beforeSubmitPrompt": 10,
    "stop": 10,
    "subagentStart": 30,
}

SHIM_SCRIPT = '''\
#!/usr/bin/env python3
"""cursor-agent hook shim installed by toadstool.

Forwards the hook input on stdin to the bridge named by
TOADSTOOL_HOOK_SOCKET (a Unix socket path or an http:// URL) and prints
the answer. Prints {} on any failure so cursor-agent never blocks.
"""
import http.client
import os
import socket
import sys
import urllib.parse

TIMEOUT_SECONDS = 25


class UnixHTTPConnection(http.client.HTTPConnection):
    def __init__(self, path, timeout):
        super().__init__("localhost", timeout=timeout)
        self.socket_path = path

    def connect(self):
        sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        sock.settimeout(self.timeout)
        sock.connect(self.socket_path)
        self.sock = sock


def forward(address, body):
    if address.startswith(("http://", "https://")):
        url = urllib.parse.urlsplit(address)
        conn = http.client.HTTPConnection(url.hostname, url.port, timeout=TIMEOUT_SECONDS)
        path = url.path or "/hook"
    else:
        conn = UnixHTTPConnection(address, TIMEOUT_SECONDS)
        path = os.environ.get("TOADSTOOL_HOOK_PATH", "/hook")
    try:
        conn.request("POST", path, body=body, headers={"Content-Type": "application/json"})
        response = conn.getresponse()
        payload = response.read().decode("utf-8")
    finally:
        conn.close()
    if response.status != 200 or not payload.strip():
        return "{}"
    return payload


def main():
    address = os.environ.get("TOADSTOOL_HOOK_SOCKET")
    if not address:
        return "{}"
    return forward(address, sys.stdin.buffer.read())


if __name__ == "__main__":
    try:
        output = main()
    except Exception:
        output = "{}"
    sys.stdout.write(output)
    sys.stdout.flush()
'''


@dataclass
class HookInstallation:
    """Everything needed to undo one ``install_hooks`` call."""
    hooks_json_path: Path
    shim_path: Path
    previous_raw_config: bytes | None
    generated_command: str
    generated_config: dict[str, Any]
    created_dirs: list[Path] = field(default_factory=list)
    backup_path: Path | None = None
    env: dict[str, str] = field(default_factory=dict)


def shim_command(shim_path: Path) -> str:
    return f"{shlex.quote(sys.executable)} {shlex.quote(str(shim_path))}"


def generate_hooks_config(
    command: str,
    timeouts: Mapping[str, int] | None = None,
    enabled: Iterable[str] | None = None,
) -> dict[str, Any]:
    """hooks.json content routing each enabled event to ``command``."""
    merged_timeouts = {**DEFAULT_HOOK_TIMEOUTS, **(timeouts or {})}
    hooks: dict[str, list[dict[str, Any]]] = {}
    for event in (enabled if enabled is not None else ALL_HOOK_EVENTS):
        if event not in ALL_HOOK_EVENTS:
            logger.warning("generate_hooks_config: skipping unknown hook event %s", event)
            continue
        entry: dict[str, Any] = {"command": command}
        if event in merged_timeouts:
            entry["timeout"] = merged_timeouts[event]
        hooks[event] = [entry]
    return {"version": HOOKS_JSON_VERSION, "hooks": hooks}


def _is_ours(entry: Any) -> bool:
    return isinstance(entry, dict) and SHIM_MARKER in str(entry.get("command", ""))


def merge_hooks(existing: Mapping[str, Any], ours: Mapping[str, Any]) -> dict[str, Any]:
    """Append our entries after the user's; stale entries of ours are dropped."""
    existing_hooks = existing.get("hooks")
    merged_hooks: dict[str, Any] = dict(existing_hooks) if isinstance(existing_hooks, dict) else {}
    for event, entries in ours.get("hooks", {}).items():
        current = merged_hooks.get(event)
        user_entries = [
            e for e in (current if isinstance(current, list) else []) if not _is_ours(e)
        ]
        merged_hooks[event] = [*user_entries, *entries]
    return {
        **existing,
        "version": existing.get("version", HOOKS_JSON_VERSION),
        "hooks": merged_hooks,
    }


def _strip_ours(config: Mapping[str, Any]) -> dict[str, Any]:
    hooks = config.get("hooks")
    kept: dict[str, Any] = {}
    if isinstance(hooks, dict):
        for event, entries in hooks.items():
            if not isinstance(entries, list):
                kept[event] = entries
                continue
            user_entries = [e for e in entries if not _is_ours(e)]
            if user_entries:
                kept[event] = user_entries
    return {**config, "hooks": kept}


def _dump(config: Mapping[str, Any]) -> str:
    return json.dumps(config, indent=2) + "\n"


def recover_stale_installation(project_root: str | Path) -> bool:
    """Undo hooks left behind by a run that never reached cleanup.

    Returns True if anything was restored or removed.
    """
    root = Path(project_root)
    hooks_json = root / HOOKS_JSON
    backup = hooks_json.with_name(hooks_json.name + BACKUP_SUFFIX)

    if backup.exists():
        logger.warning("Restoring hooks.json from stale backup %s", backup)
        hooks_json.write_bytes(backup.read_bytes())
        backup.unlink()
        return True

    if not hooks_json.exists():
        return False
    try:
        config = json.loads(hooks_json.read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        logger.warning("recover_stale_installation: unreadable %s: %s", hooks_json, exc)
        return False
    if not isinstance(config, dict):
        return False
    hooks = config.get("hooks")
    if not isinstance(hooks, dict) or not any(
        isinstance(entries, list) and any(_is_ours(e) for e in entries)
        for entries in hooks.values()
    ):
        return False

    stripped = _strip_ours(config)
    if stripped["hooks"]:
        logger.warning("Removing stale toadstool entries from %s", hooks_json)
        hooks_json.write_text(_dump(stripped), encoding="utf-8")
    else:
        logger.warning("Removing stale toadstool-generated %s", hooks_json)
        hooks_json.unlink()
    return True


def _ensure_dir(path: Path, root: Path, created: list[Path]) -> None:
    missing = []
    current = path
    while current != root and not current.exists():
        missing.append(current)
        current = current.parent
    path.mkdir(parents=True, exist_ok=True)
    # Outermost first, so cleanup can remove in reverse
    created.extend(reversed(missing))


def install_hooks(
    project_root: str | Path,
    endpoint_env: Mapping[str, str],
    timeouts: Mapping[str, int] | None = None,
    enabled: Iterable[str] | None = None,
) -> HookInstallation:
    """Write the shim and the merged hooks.json under ``project_root``."""
    root = Path(project_root)
    recover_stale_installation(root)
    created_dirs: list[Path] = []

    hooks_dir = root / HOOKS_DIR
    _ensure_dir(hooks_dir, root, created_dirs)
    shim_path = hooks_dir / SHIM_NAME
    shim_path.write_text(SHIM_SCRIPT, encoding="utf-8")
    shim_path.chmod(0o755)

    command = shim_command(shim_path)
    generated = generate_hooks_config(command, timeouts, enabled)

    hooks_json = root / HOOKS_JSON
    _ensure_dir(hooks_json.parent, root, created_dirs)
    previous: bytes | None = None
    backup_path: Path | None = None
    final_config: dict[str, Any] = generated
    if hooks_json.exists():
        previous = hooks_json.read_bytes()
        backup_path = hooks_json.with_name(hooks_json.name + BACKUP_SUFFIX)
        backup_path.write_bytes(previous)
        try:
            existing = json.loads(previous.decode("utf-8"))
        except (UnicodeDecodeError, ValueError) as exc:
            logger.warning("install_hooks: existing %s is not valid JSON (%s); overwriting", hooks_json, exc)
            existing = None
        if isinstance(existing, dict):
            final_config = merge_hooks(existing, generated)

    hooks_json.write_text(_dump(final_config), encoding="utf-8")
    logger.info(
        "Hooks installed: %s (%d events, merged=%s)",
        hooks_json, len(generated["hooks"]), previous is not None,
    )
    return HookInstallation(
        hooks_json_path=hooks_json,
        shim_path=shim_path,
        previous_raw_config=previous,
        generated_command=command,
        generated_config=generated,
        created_dirs=created_dirs,
        backup_path=backup_path,
        env=dict(endpoint_env),
    )


def cleanup_hooks(installation: HookInstallation) -> None:
    """Restore hooks.json exactly as it was and remove everything we added."""
    hooks_json = installation.hooks_json_path
    if installation.previous_raw_config is None:
        hooks_json.unlink(missing_ok=True)
    else:
        hooks_json.write_bytes(installation.previous_raw_config)
    if installation.backup_path is not None:
        installation.backup_path.unlink(missing_ok=True)
    installation.shim_path.unlink(missing_ok=True)

    for directory in reversed(installation.created_dirs):
        try:
            directory.rmdir()
        except FileNotFoundError:
            continue
        except OSError:
            # Not empty: something else lives there now
            logger.debug("cleanup_hooks: keeping non-empty %s", directory)
    logger.info("Hooks removed from %s", hooks_json.parent.parent)
