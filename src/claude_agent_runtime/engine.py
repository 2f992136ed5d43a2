"""Control protocol engine.

Sits on top of a Transport and multiplexes the single framed channel:

- Conversation messages go to a bounded queue read by the consumer
- Control responses resolve the pending request with the same request_id
- Control requests from the CLI (permission checks, hook callbacks, tool
  server messages) each run in their own task and are always answered

State machine:
    created -> reading -> initializing -> ready -> closing -> closed

Only the event loop thread touches the pending map and the queue, so no
locks are needed around them. Hook and tool registries are built in the
constructor and never change afterwards.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import secrets
import time
from collections.abc import AsyncIterable, AsyncIterator, Coroutine
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from pydantic import ValidationError

from .config import AgentOptions
from .errors import (
    ClaudeSDKError,
    CLIConnectionError,
    ControlRequestError,
    ControlTimeoutError,
    EngineClosedError,
)
from .mcp.jsonrpc import JsonRpcErrorCode, create_error_response
from .mcp.server import SdkMcpServer
from .protocol.control import (
    INBOUND_SUBTYPES,
    CanUseToolRequest,
    ControlError,
    ControlModel,
    ControlRequest,
    ControlResponse,
    HookCallbackRequest,
    InitializeRequest,
    InterruptRequest,
    McpMessageRequest,
    McpStatusRequest,
    RewindFilesRequest,
    SetModelRequest,
    SetPermissionModeRequest,
)
from .protocol.parser import parse_hook_input, parse_message
from .transport.base import Transport
from .types import (
    HookCallback,
    HookContext,
    HookOutput,
    Message,
    PermissionMode,
    PermissionResultAllow,
    PermissionResultDeny,
    PermissionUpdate,
    ResultMessage,
    ToolPermissionContext,
)

logger = logging.getLogger(__name__)


class EngineState(str, Enum):
    """Engine lifecycle."""

    CREATED = "created"
    READING = "reading"
    INITIALIZING = "initializing"
    READY = "ready"
    CLOSING = "closing"
    CLOSED = "closed"


@dataclass
class PendingRequest:
    """An outbound control request awaiting its response."""

    request_id: str
    subtype: str
    future: asyncio.Future[dict[str, Any]]
    created_at: float = field(default_factory=time.monotonic)


def user_message_frame(prompt: str, session_id: str = "default") -> dict[str, Any]:
    """Wrap a prompt in the frame the CLI expects on stdin."""
    return {
        "type": "user",
        "message": {"role": "user", "content": prompt},
        "parent_tool_use_id": None,
        "session_id": session_id,
    }


class ControlProtocol:
    """Drives one session with the CLI over a transport.

    Args:
        transport: Channel to the CLI; connected by ``start()`` if needed
        options: Callbacks, tool servers, limits and timeouts
        streaming: Bidirectional mode. One-shot mode has no control channel,
            so ``initialize()`` is a no-op and control commands are refused.
    """

    def __init__(
        self,
        transport: Transport,
        options: AgentOptions | None = None,
        streaming: bool = True,
    ):
        self.transport = transport
        self.options = options or AgentOptions()
        self.streaming = streaming

        self._state = EngineState.CREATED
        self._pending: dict[str, PendingRequest] = {}
        self._request_counter = 0
        self._queue: asyncio.Queue[dict[str, Any]] = asyncio.Queue(
            maxsize=self.options.max_message_queue_size
        )
        self._stream_done = asyncio.Event()
        self._first_result = asyncio.Event()
        self._reader_task: asyncio.Task[None] | None = None
        self._reader_error: BaseException | None = None
        self._reader_error_reported = False
        self._stream_task: asyncio.Task[None] | None = None
        self._inflight: set[asyncio.Task[Any]] = set()
        self._init_lock = asyncio.Lock()
        self._server_info: dict[str, Any] | None = None
        self.dropped_messages = 0

        self._sdk_mcp_servers: dict[str, SdkMcpServer] = self.options.sdk_mcp_servers
        self._hook_callbacks: dict[str, tuple[HookCallback, float | None]] = {}
        self._hooks_config = self._register_hooks()

    @property
    def state(self) -> EngineState:
        return self._state

    @property
    def pending_request_ids(self) -> list[str]:
        return list(self._pending)

    @property
    def server_info(self) -> dict[str, Any] | None:
        """Cached initialize result."""
        return self._server_info

    def get_server_info(self) -> dict[str, Any] | None:
        return self._server_info

    def _register_hooks(self) -> dict[str, list[dict[str, Any]]]:
        """Assign callback ids and build the hook section of ``initialize``."""
        config: dict[str, list[dict[str, Any]]] = {}
        next_id = 0
        for event, matchers in self.options.hooks.items():
            event_name = getattr(event, "value", event)
            entries = []
            for matcher in matchers:
                callback_ids = []
                for callback in matcher.hooks:
                    callback_id = f"hook_{next_id}"
                    next_id += 1
                    self._hook_callbacks[callback_id] = (callback, matcher.timeout)
                    callback_ids.append(callback_id)
                entry: dict[str, Any] = {
                    "matcher": matcher.matcher,
                    "hookCallbackIds": callback_ids,
                }
                if matcher.timeout is not None:
                    entry["timeout"] = matcher.timeout
                entries.append(entry)
            if entries:
                config[event_name] = entries
        return config

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self) -> None:
        """Connect the transport if needed and start the background reader."""
        if self._state != EngineState.CREATED:
            return

        if not self.transport.is_ready():
            await self.transport.connect()

        self._reader_task = asyncio.create_task(self._read_loop())
        self._state = EngineState.READING

    async def initialize(self) -> dict[str, Any] | None:
        """Perform the initialize handshake; the result is cached.

        Returns:
            The CLI's initialize response (commands, output style, ...), or
            None in one-shot mode

        Raises:
            CLIConnectionError: If the CLI does not answer in time
        """
        if not self.streaming:
            return None
        if self._server_info is not None:
            return self._server_info

        async with self._init_lock:
            if self._server_info is not None:
                return self._server_info

            self._ensure_open()
            self._state = EngineState.INITIALIZING
            timeout = self.options.effective_initialize_timeout
            request = InitializeRequest(hooks=self._hooks_config or None)
            try:
                response = await self.send_control_request(request, timeout=timeout)
            except ControlTimeoutError as e:
                raise CLIConnectionError(f"Initialize request timed out after {timeout}s") from e

            self._server_info = response
            if self._state == EngineState.INITIALIZING:
                self._state = EngineState.READY
            logger.info("Control protocol initialized")
            return response

    async def close(self) -> None:
        """Shut down; every waiter is released. Safe to call repeatedly."""
        if self._state in (EngineState.CLOSING, EngineState.CLOSED):
            return

        self._state = EngineState.CLOSING
        self._stream_done.set()
        self._first_result.set()
        self._fail_pending(EngineClosedError())

        current = asyncio.current_task()
        tasks = {
            t
            for t in (self._reader_task, self._stream_task, *self._inflight)
            if t is not None and t is not current
        }
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError, Exception):
                await task
        self._inflight.clear()

        await self.transport.close()
        self._state = EngineState.CLOSED
        logger.info("Control protocol closed")

    def _ensure_open(self) -> None:
        if self._state in (EngineState.CLOSING, EngineState.CLOSED):
            raise EngineClosedError()
        if self._state == EngineState.CREATED:
            raise CLIConnectionError("Not connected. Call start() first.")

    # =========================================================================
    # Reading
    # =========================================================================

    async def _read_loop(self) -> None:
        """Background task classifying every frame from the transport."""
        try:
            async for frame in self.transport.read_messages():
                frame_type = frame.get("type")

                if frame_type == "control_response":
                    self._handle_control_response(frame)
                elif frame_type == "control_request":
                    self._spawn(self._handle_control_request(frame))
                elif frame_type == "control_cancel_request":
                    logger.debug(f"Ignoring control cancel request: {frame.get('request_id')}")
                else:
                    if frame_type == "result":
                        self._first_result.set()
                    await self._enqueue(frame)
        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.error(f"Read loop error: {e}")
            self._reader_error = e
        finally:
            self._fail_pending(self._reader_error or CLIConnectionError("CLI output ended"))
            self._first_result.set()
            self._stream_done.set()

    async def _enqueue(self, frame: dict[str, Any]) -> None:
        """Queue a conversation frame; wait briefly when full, then drop it."""
        try:
            self._queue.put_nowait(frame)
            return
        except asyncio.QueueFull:
            pass

        try:
            await asyncio.wait_for(self._queue.put(frame), timeout=self.options.queue_put_timeout)
        except TimeoutError:
            self.dropped_messages += 1
            logger.warning(
                f"Message queue full ({self._queue.maxsize}), "
                f"dropping {frame.get('type')} message"
            )

    def _handle_control_response(self, frame: dict[str, Any]) -> None:
        try:
            payload = ControlResponse.model_validate(frame).response
        except ValidationError as e:
            raw = frame.get("response") or {}
            request_id = raw.get("request_id") if isinstance(raw, dict) else None
            pending = self._pending.pop(request_id, None) if request_id else None
            if pending and not pending.future.done():
                pending.future.set_exception(
                    ControlRequestError(
                        f"Malformed control response: {e}",
                        subtype=pending.subtype,
                        request_id=pending.request_id,
                    )
                )
            else:
                logger.warning(f"Discarding malformed control response: {e}")
            return

        pending = self._pending.pop(payload.request_id, None)
        if pending is None or pending.future.done():
            logger.debug(f"Discarding control response for unknown request: {payload.request_id}")
            return

        if isinstance(payload, ControlError):
            pending.future.set_exception(
                ControlRequestError(
                    payload.error, subtype=pending.subtype, request_id=pending.request_id
                )
            )
        else:
            pending.future.set_result(payload.response or {})

    def _fail_pending(self, error: BaseException) -> None:
        pending, self._pending = self._pending, {}
        for request in pending.values():
            if not request.future.done():
                request.future.set_exception(error)

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task[Any]:
        task = asyncio.create_task(coro)
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)
        return task

    # =========================================================================
    # Inbound control requests
    # =========================================================================

    async def _handle_control_request(self, frame: dict[str, Any]) -> None:
        """Answer one request from the CLI. Exactly one response is written."""
        request_id = frame.get("request_id")
        if not isinstance(request_id, str):
            logger.warning("Ignoring control request without request_id")
            return

        raw_request = frame.get("request")
        subtype = raw_request.get("subtype") if isinstance(raw_request, dict) else None

        try:
            if subtype not in INBOUND_SUBTYPES:
                raise ControlRequestError(
                    f"Unsupported control request subtype: {subtype}",
                    subtype=subtype,
                    request_id=request_id,
                )

            request = ControlRequest.model_validate(frame).request
            if isinstance(request, CanUseToolRequest):
                payload = await self._handle_permission(request)
            elif isinstance(request, HookCallbackRequest):
                payload = await self._handle_hook(request)
            elif isinstance(request, McpMessageRequest):
                payload = await self._handle_mcp(request)
            else:
                raise ControlRequestError(f"Unsupported control request subtype: {subtype}")
            response = ControlResponse.success(request_id, payload)
        except asyncio.CancelledError:
            raise
        except TimeoutError:
            logger.warning(f"Control request {subtype} ({request_id}) timed out")
            response = ControlResponse.error(request_id, f"{subtype} callback timed out")
        except Exception as e:
            logger.warning(f"Control request {subtype} ({request_id}) failed: {e}")
            response = ControlResponse.error(request_id, str(e))

        try:
            await self._write_frame(response.to_wire())
        except ClaudeSDKError as e:
            logger.warning(f"Could not send control response for {request_id}: {e}")

    async def _handle_permission(self, request: CanUseToolRequest) -> dict[str, Any]:
        callback = self.options.can_use_tool
        if callback is None:
            raise ControlRequestError("canUseTool callback is not provided")

        suggestions = []
        for suggestion in request.permission_suggestions or []:
            try:
                suggestions.append(PermissionUpdate.model_validate(suggestion))
            except ValidationError:
                logger.debug(f"Skipping unrecognized permission suggestion: {suggestion}")

        context = ToolPermissionContext(suggestions=suggestions, blocked_path=request.blocked_path)
        result = await asyncio.wait_for(
            callback(request.tool_name, request.input, context),
            timeout=self.options.callback_timeout,
        )

        if isinstance(result, (PermissionResultAllow, PermissionResultDeny)):
            return result.to_wire_for(request.input)
        raise TypeError(
            "Permission callback must return PermissionResultAllow or "
            f"PermissionResultDeny, got {type(result).__name__}"
        )

    async def _handle_hook(self, request: HookCallbackRequest) -> dict[str, Any]:
        registration = self._hook_callbacks.get(request.callback_id)
        if registration is None:
            raise ControlRequestError(f"No hook callback found for ID: {request.callback_id}")

        callback, timeout = registration
        hook_input = parse_hook_input(request.input)
        context = HookContext(tool_use_id=request.tool_use_id)
        output = await asyncio.wait_for(
            callback(hook_input, context),
            timeout=timeout or self.options.callback_timeout,
        )
        return hook_output_to_wire(output)

    async def _handle_mcp(self, request: McpMessageRequest) -> dict[str, Any]:
        server = self._sdk_mcp_servers.get(request.server_name)
        if server is None:
            error = create_error_response(
                request.message.get("id"),
                JsonRpcErrorCode.METHOD_NOT_FOUND,
                f"Server '{request.server_name}' not found",
            )
            return {"mcp_response": error.to_wire()}

        reply = await asyncio.wait_for(
            server.handle_message(request.message),
            timeout=self.options.callback_timeout,
        )
        return {"mcp_response": reply}

    # =========================================================================
    # Outbound control requests
    # =========================================================================

    async def send_control_request(
        self, request: ControlModel, timeout: float | None = None
    ) -> dict[str, Any]:
        """Send a control request and wait for its response.

        Returns:
            The ``response`` payload of a success reply (``{}`` if absent)

        Raises:
            ControlRequestError: The CLI answered with an error
            ControlTimeoutError: No answer within the timeout
            EngineClosedError: The engine closed while waiting
        """
        self._ensure_open()
        subtype = request.subtype  # type: ignore[attr-defined]
        if not self.streaming:
            raise CLIConnectionError("Control requests require streaming mode")
        if subtype != "initialize" and self._state != EngineState.READY:
            raise CLIConnectionError(f"Cannot send {subtype} before initialize completes")
        if self._stream_done.is_set():
            raise self._reader_error or CLIConnectionError("CLI output ended")

        self._request_counter += 1
        request_id = f"req_{self._request_counter}_{secrets.token_hex(4)}"
        future: asyncio.Future[dict[str, Any]] = asyncio.get_running_loop().create_future()
        self._pending[request_id] = PendingRequest(request_id, subtype, future)

        timeout = timeout if timeout is not None else self.options.control_request_timeout
        envelope = ControlRequest(request_id=request_id, request=request)
        try:
            await self._write_frame(envelope.to_wire())
            return await asyncio.wait_for(future, timeout=timeout)
        except TimeoutError as e:
            if isinstance(e, ClaudeSDKError):
                raise
            raise ControlTimeoutError(subtype, request_id, timeout) from e
        finally:
            self._pending.pop(request_id, None)

    async def interrupt(self) -> None:
        """Interrupt the turn in progress."""
        await self.send_control_request(InterruptRequest())

    async def set_model(self, model: str | None = None) -> None:
        """Switch model for the rest of the session; None restores the default."""
        await self.send_control_request(SetModelRequest(model=model))

    async def set_permission_mode(self, mode: PermissionMode | str) -> None:
        await self.send_control_request(
            SetPermissionModeRequest(mode=getattr(mode, "value", mode))
        )

    async def rewind_files(self, user_message_id: str) -> None:
        """Restore files touched since the given user message."""
        await self.send_control_request(RewindFilesRequest(user_message_id=user_message_id))

    async def get_mcp_status(self) -> dict[str, Any]:
        return await self.send_control_request(McpStatusRequest())

    # =========================================================================
    # Writing conversation input
    # =========================================================================

    async def _write_frame(self, frame: dict[str, Any]) -> None:
        if self._state in (EngineState.CLOSING, EngineState.CLOSED):
            raise EngineClosedError()
        await self.transport.write(json.dumps(frame) + "\n")

    async def send_message(
        self, message: str | dict[str, Any], session_id: str = "default"
    ) -> None:
        """Write one user message; strings are wrapped in a user frame."""
        self._ensure_open()
        if isinstance(message, str):
            message = user_message_frame(message, session_id)
        await self._write_frame(message)

    async def stream_input(self, messages: AsyncIterable[dict[str, Any]]) -> None:
        """Write every message, then half-close input.

        When the CLI may still call back into this process (hooks, tool
        servers, permission checks), input stays open until the first result
        arrives so the replies can still be written.
        """
        async for message in messages:
            if self._state in (EngineState.CLOSING, EngineState.CLOSED):
                return
            await self._write_frame(message)

        if self.options.needs_control_channel:
            try:
                await asyncio.wait_for(
                    self._first_result.wait(), timeout=self.options.stream_close_timeout
                )
            except TimeoutError:
                logger.debug("No result before stream close timeout, closing input")

        await self.transport.end_input()

    def send_stream(self, messages: AsyncIterable[dict[str, Any]]) -> asyncio.Task[None]:
        """Run ``stream_input`` as a background task alongside the reader.

        Each call starts its own task; all of them are cancelled on close.
        """
        self._ensure_open()
        self._stream_task = self._spawn(self._stream_input_task(messages))
        return self._stream_task

    async def _stream_input_task(self, messages: AsyncIterable[dict[str, Any]]) -> None:
        try:
            await self.stream_input(messages)
        except asyncio.CancelledError:
            raise
        except ClaudeSDKError as e:
            logger.warning(f"Streaming input stopped: {e}")

    # =========================================================================
    # Consumer API
    # =========================================================================

    async def receive_message(self) -> Message | None:
        """Return the next conversation message, or None once the stream ends.

        Raises:
            MessageParseError: If the next frame is not a known message; the
                session continues and later messages can still be read
            ClaudeSDKError: The transport failure that ended the stream,
                reported once after buffered messages are drained
        """
        while True:
            if self._state in (EngineState.CLOSING, EngineState.CLOSED):
                return None

            if not self._queue.empty():
                return parse_message(self._queue.get_nowait())

            if self._stream_done.is_set():
                if self._reader_error is not None and not self._reader_error_reported:
                    self._reader_error_reported = True
                    raise self._reader_error
                return None

            get_task = asyncio.ensure_future(self._queue.get())
            done_task = asyncio.ensure_future(self._stream_done.wait())
            try:
                await asyncio.wait({get_task, done_task}, return_when=asyncio.FIRST_COMPLETED)
            finally:
                done_task.cancel()
                if not get_task.done():
                    get_task.cancel()

            if get_task.done() and not get_task.cancelled():
                return parse_message(get_task.result())

    async def receive_messages(self) -> AsyncIterator[Message]:
        """Yield conversation messages until the stream ends."""
        while True:
            message = await self.receive_message()
            if message is None:
                return
            yield message

    async def receive_response(self) -> AsyncIterator[Message]:
        """Yield messages up to and including the next ResultMessage."""
        async for message in self.receive_messages():
            yield message
            if isinstance(message, ResultMessage):
                return


def hook_output_to_wire(output: HookOutput | dict[str, Any] | None) -> dict[str, Any]:
    """Serialize a hook result with the CLI's key names."""
    if output is None:
        return {}
    if isinstance(output, HookOutput):
        return output.to_wire()

    renamed = {"async_": "async", "continue_": "continue"}
    return {renamed.get(key, key): value for key, value in output.items()}
