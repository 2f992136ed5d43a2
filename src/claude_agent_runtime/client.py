"""Client API for sessions with the Claude CLI.

Two entry points:
- query(): one-shot, yields every message of a single exchange
- AgentClient: interactive session with follow-up prompts and control
  commands (interrupt, model and permission mode changes)

Both accept a custom Transport via constructor injection; by default they
launch the CLI as a subprocess.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterable, AsyncIterator
from typing import Any

from .config import AgentOptions
from .engine import ControlProtocol, user_message_frame
from .errors import CLIConnectionError
from .transport.base import Transport
from .transport.subprocess_cli import SubprocessCLITransport
from .types import Message, PermissionMode

logger = logging.getLogger(__name__)

Prompt = str | AsyncIterable[dict[str, Any]]


class AgentClient:
    """Bidirectional session with the CLI.

    Example:
        async with AgentClient(AgentOptions(model="claude-sonnet-4-5")) as client:
            await client.query("List the files in this directory")
            async for message in client.receive_response():
                print(message)
    """

    def __init__(self, options: AgentOptions | None = None, transport: Transport | None = None):
        self.options = options or AgentOptions()
        self._custom_transport = transport
        self._engine: ControlProtocol | None = None

    @property
    def is_connected(self) -> bool:
        return self._engine is not None

    async def connect(self, prompt: Prompt | None = None) -> None:
        """Launch the CLI, run the initialize handshake and send an optional first prompt."""
        if self._engine is not None:
            return

        transport = self._custom_transport or SubprocessCLITransport(self.options)
        engine = ControlProtocol(transport, self.options, streaming=True)
        try:
            await engine.start()
            await engine.initialize()
        except BaseException:
            await engine.close()
            raise

        self._engine = engine
        logger.info("Agent client connected")

        if isinstance(prompt, str):
            await engine.send_message(prompt)
        elif prompt is not None:
            engine.send_stream(prompt)

    def _require_engine(self) -> ControlProtocol:
        if self._engine is None:
            raise CLIConnectionError("Not connected. Call connect() first.")
        return self._engine

    async def query(self, prompt: Prompt, session_id: str = "default") -> None:
        """Send a prompt, or a stream of user message frames, in this session."""
        engine = self._require_engine()
        if isinstance(prompt, str):
            await engine.send_message(prompt, session_id)
            return

        async for message in prompt:
            if "session_id" not in message:
                message = {**message, "session_id": session_id}
            await engine.send_message(message)

    async def receive_messages(self) -> AsyncIterator[Message]:
        """Yield every message until the session ends."""
        async for message in self._require_engine().receive_messages():
            yield message

    async def receive_response(self) -> AsyncIterator[Message]:
        """Yield messages up to and including the next ResultMessage."""
        async for message in self._require_engine().receive_response():
            yield message

    async def interrupt(self) -> None:
        await self._require_engine().interrupt()

    async def set_permission_mode(self, mode: PermissionMode | str) -> None:
        await self._require_engine().set_permission_mode(mode)

    async def set_model(self, model: str | None = None) -> None:
        await self._require_engine().set_model(model)

    async def rewind_files(self, user_message_id: str) -> None:
        await self._require_engine().rewind_files(user_message_id)

    async def get_mcp_status(self) -> dict[str, Any]:
        """Connection status of every MCP server the CLI knows about."""
        return await self._require_engine().get_mcp_status()

    async def get_server_info(self) -> dict[str, Any] | None:
        """The cached initialize response."""
        return self._require_engine().get_server_info()

    async def disconnect(self) -> None:
        if self._engine is None:
            return
        engine, self._engine = self._engine, None
        await engine.close()
        logger.info("Agent client disconnected")

    async def __aenter__(self) -> AgentClient:
        await self.connect()
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.disconnect()


async def query(
    prompt: Prompt,
    options: AgentOptions | None = None,
    transport: Transport | None = None,
) -> AsyncIterator[Message]:
    """Run a single exchange and yield its messages.

    A string prompt runs in one-shot mode, passed on the command line with
    no control channel, unless permission callbacks, hooks or in-process
    tool servers need one. An async iterable of user message frames always
    streams over stdin.

    Example:
        async for message in query("What is 2 + 2?"):
            if isinstance(message, AssistantMessage):
                ...
    """
    options = options or AgentOptions()
    streaming = not isinstance(prompt, str) or options.needs_control_channel

    if transport is None:
        one_shot_prompt = prompt if isinstance(prompt, str) and not streaming else None
        transport = SubprocessCLITransport(options, prompt=one_shot_prompt)

    engine = ControlProtocol(transport, options, streaming=streaming)
    try:
        await engine.start()
        if streaming:
            await engine.initialize()
            if isinstance(prompt, str):
                engine.send_stream(_single_message(prompt))
            else:
                engine.send_stream(prompt)

        async for message in engine.receive_messages():
            yield message
    finally:
        await engine.close()


async def _single_message(prompt: str) -> AsyncIterator[dict[str, Any]]:
    yield user_message_frame(prompt)
