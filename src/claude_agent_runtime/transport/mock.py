"""In-memory transport for tests and embedding.

Records every frame written and lets the test play the CLI's side by
injecting frames, either directly with ``feed`` or from a responder that is
called for each written frame.

Usage:
    async def responder(frame):
        if frame.get("type") == "control_request":
            return [control_success(frame["request_id"])]
        return []

    transport = MockTransport(responder=responder)
    engine = ControlProtocol(transport, AgentOptions(), streaming=True)
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator, Awaitable, Callable
from typing import Any

from ..errors import CLIConnectionError
from .base import Transport, TransportState

Responder = Callable[[dict[str, Any]], Awaitable[list[dict[str, Any]] | None]]

_EOF = object()


def control_success(request_id: str, payload: dict[str, Any] | None = None) -> dict[str, Any]:
    """Build the frame the CLI sends to accept a control request."""
    response: dict[str, Any] = {"subtype": "success", "request_id": request_id}
    if payload is not None:
        response["response"] = payload
    return {"type": "control_response", "response": response}


def control_failure(request_id: str, error: str) -> dict[str, Any]:
    """Build the frame the CLI sends to reject a control request."""
    return {
        "type": "control_response",
        "response": {"subtype": "error", "request_id": request_id, "error": error},
    }


class MockTransport(Transport):
    """Transport backed by in-memory queues."""

    def __init__(self, responder: Responder | None = None):
        self.responder = responder
        self.written: list[dict[str, Any]] = []
        self.input_ended = False
        self._inbox: asyncio.Queue[Any] = asyncio.Queue()
        self._written_event = asyncio.Event()
        self._state = TransportState.DISCONNECTED

    @property
    def state(self) -> TransportState:
        return self._state

    async def connect(self) -> None:
        if self._state == TransportState.CLOSED:
            raise CLIConnectionError("Transport already closed")
        self._state = TransportState.CONNECTED

    async def write(self, data: str) -> None:
        if self._state != TransportState.CONNECTED:
            raise CLIConnectionError("Transport is not ready for writing")
        if self.input_ended:
            raise CLIConnectionError("Cannot write after input has been closed")

        frame = json.loads(data)
        self.written.append(frame)
        self._written_event.set()

        if self.responder:
            for reply in await self.responder(frame) or []:
                self.feed(reply)

    async def end_input(self) -> None:
        self.input_ended = True

    def is_ready(self) -> bool:
        return self._state == TransportState.CONNECTED

    async def close(self) -> None:
        if self._state == TransportState.CLOSED:
            return
        self._state = TransportState.CLOSED
        self.finish()

    async def read_messages(self) -> AsyncIterator[dict[str, Any]]:
        while True:
            item = await self._inbox.get()
            if item is _EOF:
                return
            if isinstance(item, BaseException):
                raise item
            yield item

    # =========================================================================
    # CLI side
    # =========================================================================

    def feed(self, *frames: dict[str, Any]) -> None:
        """Queue frames as if the CLI had written them."""
        for frame in frames:
            self._inbox.put_nowait(frame)

    def fail(self, error: BaseException) -> None:
        """Make the read side raise, as a dying process would."""
        self._inbox.put_nowait(error)

    def finish(self) -> None:
        """Signal EOF on the read side."""
        self._inbox.put_nowait(_EOF)

    def control_requests(self, subtype: str | None = None) -> list[dict[str, Any]]:
        """Control requests written so far, optionally filtered by subtype."""
        return [
            frame
            for frame in self.written
            if frame.get("type") == "control_request"
            and (subtype is None or frame["request"].get("subtype") == subtype)
        ]

    async def wait_for_write(
        self,
        predicate: Callable[[dict[str, Any]], bool],
        timeout: float = 1.0,
    ) -> dict[str, Any]:
        """Wait until a written frame satisfies ``predicate`` and return it."""

        async def _wait() -> dict[str, Any]:
            index = 0
            while True:
                while index < len(self.written):
                    frame = self.written[index]
                    index += 1
                    if predicate(frame):
                        return frame
                self._written_event.clear()
                await self._written_event.wait()

        return await asyncio.wait_for(_wait(), timeout=timeout)
