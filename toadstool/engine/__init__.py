"""Cursor CLI bridge engine - config, errors, retry and the cursor harness."""
from .config import BridgeConfig
from .errors import (
    BridgeError,
    CursorAuthRequiredError,
    CursorCommandError,
    CursorCommandTimeoutError,
    CursorNotInstalledError,
    CursorPromptError,
    CursorSpawnError,
    HarnessStateError,
    HookHandlerError,
    PromptAlreadyActiveError,
    TranslationError,
)
from .yaml_config import load_yaml_config

__all__ = [
    "BridgeConfig",
    "load_yaml_config",
    "BridgeError",
    "CursorAuthRequiredError",
    "CursorCommandError",
    "CursorCommandTimeoutError",
    "CursorNotInstalledError",
    "CursorPromptError",
    "CursorSpawnError",
    "HarnessStateError",
    "HookHandlerError",
    "PromptAlreadyActiveError",
    "TranslationError",
]
