"""Transport abstraction for talking to the CLI.

A transport moves newline-delimited JSON frames in both directions and
knows nothing about what the frames mean. The control protocol engine sits
on top and accepts any Transport via constructor injection, which is how the
in-memory MockTransport replaces the real subprocess in tests.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from enum import Enum
from typing import Any


class TransportState(str, Enum):
    """Connection state machine."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    CLOSED = "closed"


class Transport(ABC):
    """Line-framed duplex channel to the CLI.

    Implementations must:
    - connect/close: lifecycle; close is idempotent
    - write: send one complete line; fail with CLIConnectionError once closed
    - read_messages: yield decoded JSON objects until EOF
    - end_input: half-close the outbound direction while reads continue
    """

    @abstractmethod
    async def connect(self) -> None:
        """Open the channel.

        Raises:
            CLINotFoundError: If the CLI executable does not exist
            CLIConnectionError: For any other connect failure
        """
        ...

    @abstractmethod
    async def write(self, data: str) -> None:
        """Write one newline-terminated frame."""
        ...

    @abstractmethod
    def read_messages(self) -> AsyncIterator[dict[str, Any]]:
        """Yield decoded frames. Must be an async generator."""
        ...

    @abstractmethod
    async def end_input(self) -> None:
        """Close the outbound direction."""
        ...

    @abstractmethod
    def is_ready(self) -> bool:
        """Check if the transport accepts writes."""
        ...

    @abstractmethod
    async def close(self) -> None:
        """Release the channel and any process behind it."""
        ...

    async def __aenter__(self) -> Transport:
        await self.connect()
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()
