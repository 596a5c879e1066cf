"""cursor-agent process connection.

Owns every child process the bridge starts:

- one streaming ``cursor-agent -p`` invocation per prompt (at most one
  in flight), fed through a fresh :class:`CursorStreamParser`
- one-shot management commands (``--version``, ``status``, ``models``,
  ``ls``, ``create-chat``, ``about``, ``mcp list``, ``login``,
  ``logout``) bounded by ``command_timeout_seconds``

Children start in their own session/process group so disconnect can
signal the agent together with anything it spawned.
"""
from __future__ import annotations

import asyncio
import codecs
import logging
import os
import signal
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from ...adapters.events import StderrChunk, StreamIssues, TextTruncated
from ..config import BridgeConfig, EventSink, fire_event
from ..errors import (
    CursorCommandError,
    CursorCommandTimeoutError,
    CursorSpawnError,
    PromptAlreadyActiveError,
)
from .command_parsers import (
    AboutInfo,
    AuthCommandResult,
    AuthStatus,
    McpServerStatus,
    ModelsResponse,
    extract_chat_id,
    extract_session_ids,
    parse_about_output,
    parse_login_output,
    parse_logout_output,
    parse_mcp_list_output,
    parse_models_output,
    parse_status_output,
    parse_version_output,
)
from .stream_parser import CursorStreamParser, TextTruncatedCallback
from .stream_types import ResultEvent, StreamEvent, SystemInitEvent

logger = logging.getLogger(__name__)

INSTALL_COMMAND = "curl -fsSL https://cursor.com/install | bash"
LOGIN_COMMAND = "cursor-agent login"
CURSOR_API_KEY_ENV = "CURSOR_API_KEY"
READ_CHUNK_BYTES = 64 * 1024


class CliMode(str, Enum):
    """Values accepted by ``cursor-agent --mode``."""
    AGENT = "agent"
    PLAN = "plan"
    ASK = "ask"


# Session-mode aliases used by the terminal client
_SESSION_MODE_ALIASES = {
    "auto": CliMode.AGENT,
    "full-access": CliMode.AGENT,
    "read-only": CliMode.ASK,
}


def resolve_cli_mode(mode: str | None) -> CliMode | None:
    if not mode:
        return None
    try:
        return CliMode(mode)
    except ValueError:
        return _SESSION_MODE_ALIASES.get(mode)


@dataclass
class PromptRequest:
    """One prompt invocation."""
    message: str
    session_id: str | None = None
    model: str | None = None
    mode: str | None = None
    force: bool = False
    api_key: str | None = None
    workspace: str | None = None
    stream_partial_output: bool = True
    # Extra --flag value pairs appended after the standard arguments
    extra_flags: dict[str, str] = field(default_factory=dict)


@dataclass
class PromptResult:
    session_id: str | None
    result_text: str | None
    events: list[StreamEvent]
    stderr: str
    exit_code: int | None
    signal: str | None = None

    @property
    def has_result(self) -> bool:
        return any(isinstance(e, ResultEvent) for e in self.events)


@dataclass
class CommandResult:
    stdout: str
    stderr: str
    exit_code: int | None


@dataclass
class InstallInfo:
    installed: bool
    command: str
    version: str | None = None
    install_command: str | None = None


class StderrBuffer:
    """Keeps the most recent ``max_bytes`` of a child's stderr."""

    def __init__(self, max_bytes: int) -> None:
        self._max_bytes = max_bytes
        self._data = bytearray()

    def append(self, chunk: bytes) -> None:
        self._data.extend(chunk)
        overflow = len(self._data) - self._max_bytes
        if overflow > 0:
            del self._data[:overflow]

    def text(self) -> str:
        return self._data.decode("utf-8", errors="replace")

    def __len__(self) -> int:
        return len(self._data)


class CursorCliConnection:
    """Spawns and supervises cursor-agent child processes."""

    def __init__(
        self,
        config: BridgeConfig | None = None,
        *,
        env: Mapping[str, str] | None = None,
        parser_factory: Callable[..., CursorStreamParser] | None = None,
    ) -> None:
        self._config = config or BridgeConfig()
        self._command = self._config.cursor_command
        self._base_args = list(self._config.cursor_args)
        self._cwd = self._config.cwd
        self._env = dict(os.environ if env is None else env)
        self._extra_env: dict[str, str] = {}
        self._parser_factory = parser_factory or self._default_parser
        # Each child maps to an event set once its owner stops reading it
        self._processes: dict[asyncio.subprocess.Process, asyncio.Event] = {}
        self._prompt_active = False
        self._session_id: str | None = None
        self._signal_loop: asyncio.AbstractEventLoop | None = None
        self._signal_tasks: set[asyncio.Task] = set()

    @property
    def command(self) -> str:
        return self._command

    @property
    def session_id(self) -> str | None:
        """Most recent vendor session id seen or created."""
        return self._session_id

    @property
    def is_prompt_active(self) -> bool:
        return self._prompt_active

    def merge_env(self, env: Mapping[str, str]) -> None:
        """Add variables (e.g. the hook socket) to every future child."""
        self._extra_env.update(env)

    def remove_env(self, *names: str) -> None:
        for name in names:
            self._extra_env.pop(name, None)

    def _spawn_env(self) -> dict[str, str]:
        return {**self._env, **self._extra_env}

    def _default_parser(
        self, *, on_text_truncated: TextTruncatedCallback | None = None,
    ) -> CursorStreamParser:
        return CursorStreamParser(
            max_accumulated_text_bytes=self._config.max_accumulated_text_bytes,
            backpressure_high_watermark=self._config.backpressure_high_watermark,
            on_text_truncated=on_text_truncated,
        )

    def _api_key(self, request: PromptRequest | None = None) -> str | None:
        if request is not None and request.api_key:
            return request.api_key
        return self._config.api_key or self._spawn_env().get(CURSOR_API_KEY_ENV) or None

    # ── Prompting ──

    def build_prompt_args(self, request: PromptRequest) -> list[str]:
        args = [*self._base_args, "-p", "--output-format", "stream-json"]
        if request.stream_partial_output:
            args.append("--stream-partial-output")

        resume_id = request.session_id or self._session_id
        if resume_id:
            args.extend(["--resume", resume_id])
        if request.model:
            args.extend(["--model", request.model])
        mode = resolve_cli_mode(request.mode)
        if mode is not None:
            args.extend(["--mode", mode.value])
        if request.force:
            args.append("--force")
        api_key = self._api_key(request)
        if api_key:
            args.extend(["--api-key", api_key])
        if request.workspace:
            args.extend(["--workspace", request.workspace])
        for key, value in request.extra_flags.items():
            args.extend([f"--{key}", value])
        return args

    async def spawn_prompt(
        self,
        request: PromptRequest,
        *,
        on_event: Callable[[StreamEvent], None] | None = None,
        on_stderr: EventSink | None = None,
        on_error: EventSink | None = None,
    ) -> PromptResult:
        """Run one prompt to completion; the prompt text goes over stdin.

        Raises :class:`PromptAlreadyActiveError` without waiting if another
        prompt is in flight.
        """
        if self._prompt_active:
            raise PromptAlreadyActiveError()
        self._prompt_active = True
        try:
            return await self._run_prompt(request, on_event, on_stderr, on_error)
        finally:
            self._prompt_active = False

    async def _run_prompt(
        self,
        request: PromptRequest,
        on_event: Callable[[StreamEvent], None] | None,
        on_stderr: EventSink | None,
        on_error: EventSink | None,
    ) -> PromptResult:
        args = self.build_prompt_args(request)
        logger.debug(
            "spawn_prompt: %s %s (cwd=%s)",
            self._command, " ".join(a for a in args if a != self._api_key(request)),
            self._cwd,
        )
        proc = await self._spawn(args, stdin=asyncio.subprocess.PIPE)

        def on_text_truncated(session_id: str, original_bytes: int, limit_bytes: int) -> None:
            fire_event(on_error, TextTruncated(
                session_id=session_id,
                original_bytes=original_bytes,
                limit_bytes=limit_bytes,
            ))

        parser = self._parser_factory(on_text_truncated=on_text_truncated)
        events: list[StreamEvent] = []
        stderr_buffer = StderrBuffer(self._config.stderr_buffer_bytes)
        init_session_id: str | None = None

        def forward() -> None:
            nonlocal init_session_id
            for event in parser.drain_events():
                if isinstance(event, SystemInitEvent):
                    init_session_id = event.session_id
                    self._session_id = event.session_id
                events.append(event)
                if on_event is not None:
                    try:
                        on_event(event)
                    except Exception:
                        logger.exception("spawn_prompt: on_event callback failed")

        async def pump_stdout() -> None:
            assert proc.stdout is not None
            while True:
                chunk = await proc.stdout.read(READ_CHUNK_BYTES)
                if not chunk:
                    break
                result = parser.push_chunk(chunk)
                forward()
                if result.should_pause:
                    # forward() has already drained the queue synchronously;
                    # this only yields once to the loop before the next read
                    logger.debug("spawn_prompt: stdout paused on backpressure")
                    await asyncio.sleep(0)

        async def pump_stderr() -> None:
            assert proc.stderr is not None
            decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
            while True:
                chunk = await proc.stderr.read(READ_CHUNK_BYTES)
                if not chunk:
                    break
                stderr_buffer.append(chunk)
                text = decoder.decode(chunk)
                if text:
                    fire_event(on_stderr, StderrChunk(text=text))

        try:
            await self._write_stdin(proc, request.message)
            await asyncio.gather(pump_stdout(), pump_stderr())
            returncode = await proc.wait()
        except BaseException:
            # Nobody reads this child any more; stop it before untracking
            await asyncio.shield(self._terminate(proc))
            raise
        finally:
            self._release(proc)

        parser.end()
        forward()
        if parser.total_malformed or parser.total_invalid:
            fire_event(on_error, StreamIssues(
                session_id=init_session_id,
                malformed_lines=parser.total_malformed,
                invalid_events=parser.total_invalid,
            ))

        exit_code, signal_name = _split_returncode(returncode)
        result_text = None
        for event in events:
            if isinstance(event, ResultEvent):
                result_text = event.result_text
        stderr_text = stderr_buffer.text()
        if exit_code not in (0, None) or signal_name:
            logger.warning(
                "cursor-agent exited code=%s signal=%s stderr=%s",
                exit_code, signal_name, stderr_text.strip()[-500:],
            )
        return PromptResult(
            session_id=init_session_id or request.session_id or self._session_id,
            result_text=result_text,
            events=events,
            stderr=stderr_text,
            exit_code=exit_code,
            signal=signal_name,
        )

    @staticmethod
    async def _write_stdin(proc: asyncio.subprocess.Process, text: str) -> None:
        if proc.stdin is None:
            return
        try:
            proc.stdin.write(text.encode("utf-8"))
            await proc.stdin.drain()
        except (BrokenPipeError, ConnectionResetError):
            logger.debug("spawn_prompt: child closed stdin early")
        finally:
            proc.stdin.close()

    # ── Process management ──

    async def _spawn(self, args: list[str], *, stdin: Any) -> asyncio.subprocess.Process:
        try:
            # create_subprocess_exec passes args as array, no shell
            proc = await asyncio.create_subprocess_exec(
                self._command, *args,
                stdin=stdin,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=self._cwd,
                env=self._spawn_env(),
                start_new_session=True,
            )
        except (FileNotFoundError, PermissionError) as exc:
            raise CursorSpawnError(self._command, str(exc), retryable=False) from exc
        except OSError as exc:
            raise CursorSpawnError(self._command, str(exc), retryable=True) from exc
        self._processes[proc] = asyncio.Event()
        return proc

    def _release(self, proc: asyncio.subprocess.Process) -> None:
        released = self._processes.pop(proc, None)
        if released is not None:
            released.set()

    @staticmethod
    def _signal_process(proc: asyncio.subprocess.Process, sig: int) -> None:
        try:
            # The child leads its own process group (start_new_session).
            # The group outlives a leader that has already been reaped.
            os.killpg(proc.pid, sig)
            return
        except ProcessLookupError:
            return
        except OSError as exc:
            logger.debug("killpg(%d) failed (%s); signalling pid", proc.pid, exc)
        if proc.returncode is not None:
            return
        try:
            proc.send_signal(sig)
        except ProcessLookupError:
            pass

    @staticmethod
    async def _wait_stopped(
        proc: asyncio.subprocess.Process, released: asyncio.Event | None,
    ) -> None:
        """Wait for the leader, then for its owner to see EOF on every pipe."""
        await proc.wait()
        if released is not None:
            await released.wait()

    async def _terminate(
        self, proc: asyncio.subprocess.Process, released: asyncio.Event | None = None,
    ) -> None:
        """SIGTERM the process group, then SIGKILL after the grace period."""
        grace = self._config.disconnect_grace_seconds
        self._signal_process(proc, signal.SIGTERM)
        try:
            await asyncio.wait_for(self._wait_stopped(proc, released), timeout=grace)
            return
        except asyncio.TimeoutError:
            logger.warning(
                "cursor-agent pid=%d ignored SIGTERM for %.1fs, sending SIGKILL",
                proc.pid, grace,
            )
        self._signal_process(proc, signal.SIGKILL)
        try:
            await asyncio.wait_for(self._wait_stopped(proc, released), timeout=grace)
        except asyncio.TimeoutError:
            logger.error(
                "cursor-agent pid=%d: output still open %.1fs after SIGKILL",
                proc.pid, grace,
            )

    async def disconnect(self) -> None:
        """Terminate every tracked child and its process group; safe to call repeatedly.

        A child stays tracked until its owner has finished reading it, so a
        prompt whose leader already exited is still unblocked here.
        """
        self.remove_signal_handlers()
        tracked = list(self._processes.items())
        if tracked:
            logger.info("disconnect: terminating %d cursor-agent process(es)", len(tracked))
            await asyncio.gather(*(self._terminate(p, released) for p, released in tracked))
        self._processes.clear()
        self._session_id = None

    def install_signal_handlers(self) -> None:
        """Tear down children on SIGINT/SIGTERM delivered to this loop."""
        if self._signal_loop is not None:
            return
        loop = asyncio.get_running_loop()
        try:
            for sig in (signal.SIGINT, signal.SIGTERM):
                loop.add_signal_handler(sig, self._on_signal, sig)
        except (NotImplementedError, RuntimeError) as exc:
            # Not the main thread, or a platform without loop signal support
            logger.debug("install_signal_handlers: unavailable (%s)", exc)
            return
        self._signal_loop = loop

    def remove_signal_handlers(self) -> None:
        loop, self._signal_loop = self._signal_loop, None
        if loop is None or loop.is_closed():
            return
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.remove_signal_handler(sig)

    def _on_signal(self, sig: int) -> None:
        logger.info("Received %s, stopping cursor-agent", signal.Signals(sig).name)
        task = asyncio.ensure_future(self.disconnect())
        self._signal_tasks.add(task)
        task.add_done_callback(self._signal_tasks.discard)

    # ── Management commands ──

    async def _exec_command(
        self, args: list[str], *, timeout_seconds: float | None = None,
    ) -> CommandResult:
        timeout = timeout_seconds or self._config.command_timeout_seconds
        cmd = [self._command, *args]
        proc = await self._spawn(args, stdin=asyncio.subprocess.DEVNULL)
        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            self._signal_process(proc, signal.SIGKILL)
            await proc.wait()
            raise CursorCommandTimeoutError(cmd, timeout) from None
        except BaseException:
            await asyncio.shield(self._terminate(proc))
            raise
        finally:
            self._release(proc)
        return CommandResult(
            stdout=stdout.decode("utf-8", errors="replace"),
            stderr=stderr.decode("utf-8", errors="replace"),
            exit_code=proc.returncode,
        )

    async def _exec_checked(self, args: list[str]) -> CommandResult:
        result = await self._exec_command(args)
        if result.exit_code != 0:
            raise CursorCommandError(
                [self._command, *args], result.exit_code, result.stderr or result.stdout,
            )
        return result

    async def verify_installation(self) -> InstallInfo:
        try:
            result = await self._exec_command(["--version"])
        except (CursorSpawnError, CursorCommandTimeoutError) as exc:
            logger.warning("verify_installation: %s", exc)
            return InstallInfo(
                installed=False, command=self._command, install_command=INSTALL_COMMAND,
            )
        if result.exit_code != 0:
            logger.warning(
                "verify_installation: %s --version exited %s",
                self._command, result.exit_code,
            )
            return InstallInfo(
                installed=False, command=self._command, install_command=INSTALL_COMMAND,
            )
        return InstallInfo(
            installed=True,
            command=self._command,
            version=parse_version_output(result.stdout),
        )

    async def verify_auth(self) -> AuthStatus:
        api_key = self._api_key()
        try:
            result = await self._exec_command(["status"])
        except (CursorSpawnError, CursorCommandTimeoutError) as exc:
            logger.warning("verify_auth: %s", exc)
            return parse_status_output("", "", api_key)
        return parse_status_output(result.stdout, result.stderr, api_key)

    async def list_models(self) -> ModelsResponse:
        result = await self._exec_checked(["models"])
        return parse_models_output(result.stdout)

    async def list_sessions(self) -> list[str]:
        result = await self._exec_checked(["ls"])
        return extract_session_ids(result.stdout)

    async def create_chat(self) -> str:
        args = ["create-chat"]
        result = await self._exec_checked(args)
        chat_id = extract_chat_id(result.stdout)
        if chat_id is None:
            raise CursorCommandError(
                [self._command, *args], result.exit_code,
                "create-chat returned an empty session id",
            )
        self._session_id = chat_id
        return chat_id

    async def about(self) -> AboutInfo:
        result = await self._exec_checked(["about"])
        return parse_about_output(result.stdout)

    async def list_mcp_servers(self) -> list[McpServerStatus]:
        result = await self._exec_checked(["mcp", "list"])
        return parse_mcp_list_output(result.stdout)

    async def login(self, timeout_seconds: float | None = None) -> AuthCommandResult:
        result = await self._exec_command(["login"], timeout_seconds=timeout_seconds)
        return parse_login_output(result.stdout, result.stderr)

    async def logout(self) -> AuthCommandResult:
        result = await self._exec_command(["logout"])
        return parse_logout_output(result.stdout, result.stderr)


def _split_returncode(returncode: int | None) -> tuple[int | None, str | None]:
    """asyncio reports death-by-signal as a negative return code."""
    if returncode is None or returncode >= 0:
        return returncode, None
    try:
        return None, signal.Signals(-returncode).name
    except ValueError:
        return None, f"SIG{-returncode}"
