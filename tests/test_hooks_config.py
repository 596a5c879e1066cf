import json
import os
from pathlib import Path

from toadstool.engine.cursor.hooks_config import (
    BACKUP_SUFFIX,
    DEFAULT_HOOK_TIMEOUTS,
    HOOKS_DIR,
    HOOKS_JSON,
    SHIM_NAME,
    cleanup_hooks,
    generate_hooks_config,
    install_hooks,
    merge_hooks,
    recover_stale_installation,
)

ENDPOINT_ENV = {"TOADSTOOL_HOOK_SOCKET": "/tmp/toadstool-hook-x/hook.sock"}


def test_install_into_empty_project_and_cleanup_removes_everything(tmp_path: Path) -> None:
    installation = install_hooks(tmp_path, ENDPOINT_ENV)

    hooks_json = tmp_path / HOOKS_JSON
    shim = tmp_path / HOOKS_DIR / SHIM_NAME
    assert installation.previous_raw_config is None
    assert hooks_json.exists()
    assert shim.exists()
    assert os.access(shim, os.X_OK)
    config = json.loads(hooks_json.read_text())
    assert config["version"] == 1
    assert config["hooks"]["preToolUse"] == [
        {"command": installation.generated_command, "timeout": 30},
    ]
    assert "afterFileEdit" in config["hooks"]
    assert "timeout" not in config["hooks"]["afterFileEdit"][0]
    assert installation.env == ENDPOINT_ENV

    cleanup_hooks(installation)

    assert not hooks_json.exists()
    assert not shim.exists()
    assert not (tmp_path / ".cursor").exists()
    assert not (tmp_path / ".toadstool").exists()
    assert tmp_path.exists()


def test_existing_hooks_json_is_merged_and_restored_byte_for_byte(tmp_path: Path) -> None:
    hooks_json = tmp_path / HOOKS_JSON
    hooks_json.parent.mkdir()
    # Deliberately odd formatting: restore must not re-serialize
    original = (
        b'{ "version":1,\n  "hooks": {"preToolUse": [ {"command": "./audit.sh"} ],'
        b' "afterFileEdit":[{"command":"./fmt.sh"}]},\n"extra": true }\n'
    )
    hooks_json.write_bytes(original)

    installation = install_hooks(tmp_path, ENDPOINT_ENV)

    merged = json.loads(hooks_json.read_text())
    assert merged["extra"] is True
    pre_tool_use = merged["hooks"]["preToolUse"]
    assert pre_tool_use[0] == {"command": "./audit.sh"}
    assert pre_tool_use[1]["command"] == installation.generated_command
    assert merged["hooks"]["afterFileEdit"][0] == {"command": "./fmt.sh"}
    backup = hooks_json.with_name(hooks_json.name + BACKUP_SUFFIX)
    assert backup.read_bytes() == original

    cleanup_hooks(installation)

    assert hooks_json.read_bytes() == original
    assert not backup.exists()
    assert hooks_json.parent.exists()


def test_reinstall_replaces_stale_toadstool_entries(tmp_path: Path) -> None:
    existing = {
        "version": 1,
        "hooks": {
            "stop": [
                {"command": "python /old/.toadstool/hooks/toadstool-hook.py"},
                {"command": "./notify.sh"},
            ],
        },
    }
    ours = generate_hooks_config("python /new/toadstool-hook.py", enabled=["stop"])

    merged = merge_hooks(existing, ours)

    assert merged["hooks"]["stop"] == [
        {"command": "./notify.sh"},
        {"command": "python /new/toadstool-hook.py", "timeout": 10},
    ]


def test_generate_hooks_config_respects_enabled_and_timeouts() -> None:
    config = generate_hooks_config(
        "cmd", timeouts={"preToolUse": 45}, enabled=["preToolUse", "notARealHook"],
    )

    assert config == {
        "version": 1,
        "hooks": {"preToolUse": [{"command": "cmd", "timeout": 45}]},
    }
    assert DEFAULT_HOOK_TIMEOUTS["beforeShellExecution"] == 60


def test_invalid_existing_json_is_overwritten_but_restored(tmp_path: Path) -> None:
    hooks_json = tmp_path / HOOKS_JSON
    hooks_json.parent.mkdir()
    hooks_json.write_bytes(b"{ not json")

    installation = install_hooks(tmp_path, ENDPOINT_ENV)
    assert json.loads(hooks_json.read_text())["hooks"]

    cleanup_hooks(installation)
    assert hooks_json.read_bytes() == b"{ not json"


def test_recover_from_backup_left_by_crashed_run(tmp_path: Path) -> None:
    hooks_json = tmp_path / HOOKS_JSON
    hooks_json.parent.mkdir()
    original = b'{"version": 1, "hooks": {}}'
    hooks_json.write_bytes(original)
    install_hooks(tmp_path, ENDPOINT_ENV)
    # No cleanup: simulate a crash

    assert recover_stale_installation(tmp_path) is True

    assert hooks_json.read_bytes() == original
    assert not hooks_json.with_name(hooks_json.name + BACKUP_SUFFIX).exists()
    assert recover_stale_installation(tmp_path) is False


def test_recover_removes_generated_file_without_backup(tmp_path: Path) -> None:
    install_hooks(tmp_path, ENDPOINT_ENV)

    assert recover_stale_installation(tmp_path) is True
    assert not (tmp_path / HOOKS_JSON).exists()


def test_recover_strips_only_our_entries(tmp_path: Path) -> None:
    hooks_json = tmp_path / HOOKS_JSON
    hooks_json.parent.mkdir()
    hooks_json.write_text(json.dumps({
        "version": 1,
        "hooks": {
            "stop": [{"command": "./notify.sh"}, {"command": "py toadstool-hook.py"}],
            "preToolUse": [{"command": "py toadstool-hook.py"}],
        },
    }))

    assert recover_stale_installation(tmp_path) is True

    assert json.loads(hooks_json.read_text())["hooks"] == {
        "stop": [{"command": "./notify.sh"}],
    }


def test_second_install_after_crash_restores_user_file_on_cleanup(tmp_path: Path) -> None:
    hooks_json = tmp_path / HOOKS_JSON
    hooks_json.parent.mkdir()
    original = b'{"version": 1, "hooks": {"stop": [{"command": "./notify.sh"}]}}\n'
    hooks_json.write_bytes(original)

    install_hooks(tmp_path, ENDPOINT_ENV)
    installation = install_hooks(tmp_path, ENDPOINT_ENV)
    cleanup_hooks(installation)

    assert hooks_json.read_bytes() == original


def test_cleanup_keeps_directories_that_gained_files(tmp_path: Path) -> None:
    installation = install_hooks(tmp_path, ENDPOINT_ENV)
    keep = tmp_path / ".cursor" / "rules.mdc"
    keep.write_text("keep me")

    cleanup_hooks(installation)

    assert keep.exists()
    assert not (tmp_path / ".toadstool").exists()
