"""cursor-agent integration: stream parsing, translation, hooks and process control."""
from .connection import CursorCliConnection, PromptRequest, PromptResult
from .harness import CursorCliHarness, PromptResponse, SessionPromptRequest
from .hook_server import HookEndpoint, HookIpcServer
from .hooks_config import cleanup_hooks, install_hooks
from .stream_parser import CursorStreamParser
from .stream_types import StreamEvent, parse_stream_event
from .translator import CursorToAcpTranslator

__all__ = [
    "CursorCliConnection",
    "PromptRequest",
    "PromptResult",
    "CursorCliHarness",
    "PromptResponse",
    "SessionPromptRequest",
    "HookEndpoint",
    "HookIpcServer",
    "install_hooks",
    "cleanup_hooks",
    "CursorStreamParser",
    "StreamEvent",
    "parse_stream_event",
    "CursorToAcpTranslator",
]
