"""Exception hierarchy for the agent bridge.

Specific exceptions for each failure mode. Spawn-fatal conditions carry
the instruction the user needs (install the binary / run login) instead
of surfacing a raw stack trace.
"""
from __future__ import annotations


class BridgeError(Exception):
    """Base exception for all agent bridge errors."""


class CursorNotInstalledError(BridgeError):
    """The cursor-agent binary could not be found or executed."""
    def __init__(self, command: str, install_command: str):
        self.command = command
        self.install_command = install_command
        super().__init__(
            f"Cursor CLI binary '{command}' not found. "
            f"Install with: {install_command}"
        )


class CursorAuthRequiredError(BridgeError):
    """The cursor-agent binary is installed but not logged in."""
    def __init__(self, login_command: str):
        self.login_command = login_command
        super().__init__(
            f"Cursor authentication required. Run: {login_command}"
        )


class CursorSpawnError(BridgeError):
    """Failed to start a cursor-agent child process."""
    def __init__(self, command: str, reason: str, *, retryable: bool):
        self.command = command
        self.reason = reason
        self.retryable = retryable
        super().__init__(f"Failed to spawn {command}: {reason}")


class PromptAlreadyActiveError(BridgeError):
    """A second prompt was requested while one is still in flight."""
    def __init__(self) -> None:
        super().__init__(
            "A prompt is already in progress; wait for it to complete"
        )


class CursorCommandError(BridgeError):
    """A one-shot management command exited unsuccessfully."""
    def __init__(self, command: list[str], exit_code: int | None, stderr: str):
        self.command = command
        self.exit_code = exit_code
        self.stderr = stderr
        detail = stderr.strip()[:500] or "no output"
        super().__init__(
            f"Command '{' '.join(command)}' failed "
            f"(exit={exit_code}): {detail}"
        )


class CursorCommandTimeoutError(BridgeError):
    """A one-shot management command exceeded its time budget."""
    def __init__(self, command: list[str], timeout_seconds: float):
        self.command = command
        self.timeout_seconds = timeout_seconds
        super().__init__(
            f"Command '{' '.join(command)}' timed out "
            f"after {timeout_seconds}s"
        )


class CursorPromptError(BridgeError):
    """A prompt invocation exited without producing a result."""
    def __init__(self, exit_code: int | None, signal: str | None, stderr: str):
        self.exit_code = exit_code
        self.signal = signal
        self.stderr = stderr
        tail = stderr.strip()[-500:]
        reason = f"signal {signal}" if signal else f"code {exit_code}"
        message = f"cursor-agent exited with {reason}"
        if tail:
            message = f"{message}: {tail}"
        super().__init__(message)


class TranslationError(BridgeError):
    """An event reached the translator that it has no mapping for."""
    def __init__(self, event_type: str):
        self.event_type = event_type
        super().__init__(f"Unhandled stream event: {event_type}")


class HookHandlerError(BridgeError):
    """Raised by hook handlers to answer with a specific HTTP status."""
    def __init__(self, message: str, status_code: int = 500):
        self.status_code = status_code
        super().__init__(message)


class HarnessStateError(BridgeError):
    """Operation not allowed in the harness's current state."""
    def __init__(self, operation: str, state: str):
        self.operation = operation
        self.state = state
        super().__init__(f"Cannot {operation} while harness is {state}")
