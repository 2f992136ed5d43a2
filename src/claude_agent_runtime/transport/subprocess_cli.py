"""Transport over the stdio of a Claude CLI subprocess.

Wire format:
- Frames to the CLI: JSON object + newline on stdin
- Frames from the CLI: JSON object + newline on stdout
- Diagnostics: free text on stderr, never parsed

In streaming mode (no prompt) stdin stays open for user messages and
control traffic. In one-shot mode the prompt goes on the command line and
stdin is closed right after launch.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import os
import shutil
from collections import deque
from collections.abc import AsyncIterator, Callable
from pathlib import Path
from typing import Any

from ..config import SDK_VERSION, AgentOptions
from ..errors import CLIConnectionError, CLIJSONDecodeError, CLINotFoundError, ProcessError
from ..mcp.server import SdkMcpServer
from .base import Transport, TransportState

logger = logging.getLogger(__name__)

STDERR_TAIL_LINES = 100
STDERR_CHUNK_SIZE = 64 * 1024
STDERR_QUEUE_SIZE = 1000
STDERR_DRAIN_TIMEOUT = 1.0
TERMINATE_TIMEOUT = 5.0


def find_cli(cli_path: str | Path | None = None) -> str:
    """Locate the CLI executable.

    Raises:
        CLINotFoundError: If no explicit path was given and none is installed
    """
    if cli_path:
        return str(cli_path)

    if found := shutil.which("claude"):
        return found

    home = Path.home()
    locations = [
        home / ".npm-global/bin/claude",
        Path("/usr/local/bin/claude"),
        home / ".local/bin/claude",
        home / "node_modules/.bin/claude",
        home / ".yarn/bin/claude",
        home / ".claude/local/claude",
    ]
    for path in locations:
        if path.exists() and path.is_file():
            return str(path)

    raise CLINotFoundError(
        "Claude Code not found. Install with:\n"
        "  npm install -g @anthropic-ai/claude-code\n"
        "or pass cli_path in AgentOptions"
    )


class SubprocessCLITransport(Transport):
    """Launches the CLI and exchanges JSON lines over its stdio.

    Args:
        options: Session options; process settings become CLI arguments
        prompt: One-shot prompt, or None for bidirectional streaming mode
        command: Full argv override, bypassing CLI discovery and argument
            construction. Any executable speaking the protocol works.
        close_timeout: Seconds to wait for a clean exit after stdin closes
    """

    def __init__(
        self,
        options: AgentOptions | None = None,
        prompt: str | None = None,
        command: list[str] | None = None,
        close_timeout: float = TERMINATE_TIMEOUT,
    ):
        self.options = options or AgentOptions()
        self._prompt = prompt
        self._is_streaming = prompt is None
        self._command = command
        self._close_timeout = close_timeout
        self._max_buffer_size = self.options.max_buffer_size

        self._state = TransportState.DISCONNECTED
        self._process: asyncio.subprocess.Process | None = None
        self._stderr_task: asyncio.Task[None] | None = None
        self._stderr_worker: asyncio.Task[None] | None = None
        self._stderr_lines: asyncio.Queue[str | None] = asyncio.Queue(maxsize=STDERR_QUEUE_SIZE)
        self._stderr_tail: deque[str] = deque(maxlen=STDERR_TAIL_LINES)
        self._write_lock = asyncio.Lock()
        self._stdin_closed = False
        self._ready = False
        self._closing = False

    @property
    def state(self) -> TransportState:
        return self._state

    @property
    def stderr_tail(self) -> str:
        """The most recent stderr lines, newest last."""
        return "\n".join(self._stderr_tail)

    # =========================================================================
    # Command construction
    # =========================================================================

    def build_command(self) -> list[str]:
        """Build the CLI argv from the session options."""
        opts = self.options
        cmd = [find_cli(opts.cli_path), "--output-format", "stream-json", "--verbose"]

        if opts.system_prompt is not None:
            cmd.extend(["--system-prompt", opts.system_prompt])
        if opts.allowed_tools:
            cmd.extend(["--allowedTools", ",".join(opts.allowed_tools)])
        if opts.disallowed_tools:
            cmd.extend(["--disallowedTools", ",".join(opts.disallowed_tools)])
        if opts.max_turns is not None:
            cmd.extend(["--max-turns", str(opts.max_turns)])
        if opts.model:
            cmd.extend(["--model", opts.model])

        prompt_tool = "stdio" if opts.can_use_tool is not None else opts.permission_prompt_tool_name
        if prompt_tool:
            cmd.extend(["--permission-prompt-tool", prompt_tool])
        if opts.permission_mode is not None:
            mode = getattr(opts.permission_mode, "value", opts.permission_mode)
            cmd.extend(["--permission-mode", mode])

        if opts.mcp_servers:
            servers: dict[str, Any] = {}
            for name, server in opts.mcp_servers.items():
                servers[name] = server.to_config() if isinstance(server, SdkMcpServer) else server
            cmd.extend(["--mcp-config", json.dumps({"mcpServers": servers})])

        if opts.include_partial_messages:
            cmd.append("--include-partial-messages")

        for flag, value in opts.extra_args.items():
            cmd.append(f"--{flag}")
            if value is not None:
                cmd.append(str(value))

        if self._is_streaming:
            cmd.extend(["--input-format", "stream-json"])
        else:
            cmd.extend(["--print", "--", str(self._prompt)])

        return cmd

    def _build_env(self) -> dict[str, str]:
        env = {
            **os.environ,
            **self.options.env,
            "CLAUDE_CODE_ENTRYPOINT": "sdk-py",
            "CLAUDE_AGENT_SDK_VERSION": SDK_VERSION,
        }
        if self.options.cwd:
            env["PWD"] = str(self.options.cwd)
        return env

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def connect(self) -> None:
        """Launch the subprocess."""
        if self._process:
            return

        cmd = self._command or self.build_command()
        self._state = TransportState.CONNECTING
        cwd = str(self.options.cwd) if self.options.cwd else None

        if cwd and not Path(cwd).is_dir():
            self._state = TransportState.DISCONNECTED
            raise CLIConnectionError(f"Working directory does not exist: {cwd}")

        try:
            self._process = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=cwd,
                env=self._build_env(),
                limit=self._max_buffer_size,
            )
        except FileNotFoundError as e:
            self._state = TransportState.DISCONNECTED
            raise CLINotFoundError("Claude Code not found at", cli_path=cmd[0]) from e
        except OSError as e:
            self._state = TransportState.DISCONNECTED
            raise CLIConnectionError(f"Failed to start Claude Code: {e}") from e

        if self.options.stderr is not None:
            self._stderr_worker = asyncio.create_task(self._deliver_stderr(self.options.stderr))
        self._stderr_task = asyncio.create_task(self._read_stderr())

        if not self._is_streaming:
            await self.end_input()

        self._ready = True
        self._state = TransportState.CONNECTED
        logger.info(f"Launched CLI subprocess: {cmd[0]} (pid={self._process.pid})")

    async def close(self) -> None:
        """Close stdin, give the process time to exit, then terminate it."""
        if self._state == TransportState.CLOSED:
            return

        self._state = TransportState.CLOSED
        self._ready = False
        self._closing = True

        if self._process:
            await self.end_input()
            if self._process.returncode is None:
                try:
                    await asyncio.wait_for(self._process.wait(), timeout=self._close_timeout)
                except TimeoutError:
                    self._process.terminate()
                    try:
                        await asyncio.wait_for(self._process.wait(), timeout=TERMINATE_TIMEOUT)
                    except TimeoutError:
                        logger.warning(f"CLI did not terminate, killing (pid={self._process.pid})")
                        self._process.kill()
                        await self._process.wait()
            logger.info(
                f"CLI subprocess exited (pid={self._process.pid}, "
                f"code={self._process.returncode})"
            )

        await self._stop_stderr()

    def is_ready(self) -> bool:
        return self._ready

    # =========================================================================
    # I/O
    # =========================================================================

    async def write(self, data: str) -> None:
        """Write one frame to stdin."""
        async with self._write_lock:
            if not self._ready or not self._process or not self._process.stdin:
                raise CLIConnectionError("Transport is not ready for writing")
            if self._stdin_closed:
                raise CLIConnectionError("Cannot write after input has been closed")
            if self._process.returncode is not None:
                raise CLIConnectionError(
                    f"Cannot write to terminated process (exit code: {self._process.returncode})"
                )

            try:
                self._process.stdin.write(data.encode("utf-8"))
                await self._process.stdin.drain()
            except (BrokenPipeError, ConnectionResetError) as e:
                self._ready = False
                raise CLIConnectionError(f"Failed to write to process stdin: {e}") from e

    async def end_input(self) -> None:
        """Close stdin; stdout keeps flowing until the process exits."""
        async with self._write_lock:
            if self._stdin_closed or not self._process or not self._process.stdin:
                return
            self._stdin_closed = True
            self._process.stdin.close()
            with contextlib.suppress(BrokenPipeError, ConnectionResetError):
                await self._process.stdin.wait_closed()

    async def read_messages(self) -> AsyncIterator[dict[str, Any]]:
        """Yield JSON objects from stdout until EOF.

        A single object may span several physical lines; partial text is
        accumulated until it parses, up to ``max_buffer_size`` bytes.

        Raises:
            CLIJSONDecodeError: If a frame exceeds the maximum buffer size
            ProcessError: If the process exits with a non-zero status
        """
        if not self._process or not self._process.stdout:
            raise CLIConnectionError("Not connected")

        stdout = self._process.stdout
        buffer = ""

        while True:
            try:
                raw = await stdout.readuntil(b"\n")
            except asyncio.IncompleteReadError as e:
                raw = e.partial
            except asyncio.LimitOverrunError as e:
                raise CLIJSONDecodeError(
                    buffer,
                    e,
                    f"JSON message exceeded maximum buffer size of {self._max_buffer_size} bytes",
                ) from e

            if not raw:
                break

            line = raw.decode("utf-8", errors="replace").lstrip("\ufeff").strip()
            if not line:
                continue

            if not buffer and not line.startswith("{"):
                # Log output that leaked to stdout
                logger.debug(f"Skipping non-JSON line: {line[:50]}")
                continue

            buffer += line
            if len(buffer.encode("utf-8")) > self._max_buffer_size:
                error = ValueError(f"Buffer size {len(buffer)} exceeds limit")
                raise CLIJSONDecodeError(
                    buffer,
                    error,
                    f"JSON message exceeded maximum buffer size of {self._max_buffer_size} bytes",
                )

            try:
                data = json.loads(buffer)
            except json.JSONDecodeError:
                # Incomplete object, keep accumulating
                continue

            buffer = ""
            if isinstance(data, dict):
                yield data
            else:
                logger.debug(f"Skipping non-object JSON frame: {line[:50]}")

        await self._check_exit()

        if buffer:
            raise CLIJSONDecodeError(buffer, ValueError("Unexpected end of stream"))

    async def _check_exit(self) -> None:
        """Translate a failed exit into ProcessError once stdout hits EOF."""
        if not self._process:
            return

        returncode = await self._process.wait()

        if self._stderr_task and not self._stderr_task.done():
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(
                    asyncio.shield(self._stderr_task), timeout=STDERR_DRAIN_TIMEOUT
                )

        if returncode != 0 and not self._closing:
            self._ready = False
            raise ProcessError(
                "Command failed",
                exit_code=returncode,
                stderr=self.stderr_tail or None,
            )

    async def _read_stderr(self) -> None:
        """Drain stderr in chunks, keeping a bounded tail.

        Reading never stops early: an overlong line is cut at
        ``max_buffer_size`` and the rest of it is discarded, so the child
        can never block on a full stderr pipe.
        """
        if not self._process or not self._process.stderr:
            return

        stderr = self._process.stderr
        pending = b""
        discarding = False
        try:
            while chunk := await stderr.read(STDERR_CHUNK_SIZE):
                pending += chunk
                while (newline := pending.find(b"\n")) != -1:
                    raw, pending = pending[:newline], pending[newline + 1 :]
                    if discarding:
                        # Remainder of a line that was already cut
                        discarding = False
                        continue
                    self._on_stderr_line(raw)

                if discarding:
                    pending = b""
                elif len(pending) > self._max_buffer_size:
                    self._on_stderr_line(pending)
                    pending = b""
                    discarding = True

            if pending and not discarding:
                self._on_stderr_line(pending)
        except asyncio.CancelledError:
            pass
        finally:
            if self._stderr_worker:
                with contextlib.suppress(asyncio.QueueFull):
                    self._stderr_lines.put_nowait(None)

    def _on_stderr_line(self, raw: bytes) -> None:
        if len(raw) > self._max_buffer_size:
            logger.debug(f"Truncating {len(raw)} byte stderr line")
            raw = raw[: self._max_buffer_size]

        line = raw.decode("utf-8", errors="replace").rstrip()
        if not line:
            return
        self._stderr_tail.append(line)

        if not self._stderr_worker:
            logger.debug(f"[cli stderr] {line}")
            return
        try:
            self._stderr_lines.put_nowait(line)
        except asyncio.QueueFull:
            logger.debug(f"stderr callback is behind, dropping line: {line[:50]}")

    async def _deliver_stderr(self, callback: Callable[[str], None]) -> None:
        """Run the stderr callback in a worker thread, one line at a time."""
        while (line := await self._stderr_lines.get()) is not None:
            try:
                await asyncio.to_thread(callback, line)
            except Exception as e:
                logger.warning(f"stderr callback failed: {e}")

    async def _stop_stderr(self) -> None:
        if self._stderr_task:
            if not self._stderr_task.done():
                with contextlib.suppress(TimeoutError):
                    await asyncio.wait_for(
                        asyncio.shield(self._stderr_task), timeout=STDERR_DRAIN_TIMEOUT
                    )
            self._stderr_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._stderr_task
            self._stderr_task = None

        if self._stderr_worker:
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(
                    asyncio.shield(self._stderr_worker), timeout=STDERR_DRAIN_TIMEOUT
                )
            self._stderr_worker.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._stderr_worker
            self._stderr_worker = None
