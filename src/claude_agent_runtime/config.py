"""Configuration for a session with the Claude CLI."""

from __future__ import annotations

import os
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .mcp.server import SdkMcpServer
from .types import CanUseTool, HookEvent, HookMatcher, PermissionMode

SDK_VERSION = "0.1.0"

DEFAULT_MAX_BUFFER_SIZE = 1024 * 1024  # 1 MiB per framed line
DEFAULT_MAX_MESSAGE_QUEUE_SIZE = 1000
DEFAULT_TIMEOUT = 60.0

STREAM_CLOSE_TIMEOUT_ENV = "CLAUDE_CODE_STREAM_CLOSE_TIMEOUT"


def stream_close_timeout_from_env(default: float = DEFAULT_TIMEOUT) -> float:
    """Read the stream close timeout (given in milliseconds) from the environment."""
    raw = os.environ.get(STREAM_CLOSE_TIMEOUT_ENV)
    if not raw:
        return default
    try:
        return int(raw) / 1000.0
    except ValueError:
        return default


@dataclass
class AgentOptions:
    """Options for launching and talking to the CLI.

    Process settings are turned into command-line arguments by the
    subprocess transport. Callback, limit and timeout settings are consumed
    by the control protocol engine.
    """

    # Process
    cli_path: str | Path | None = None
    cwd: str | Path | None = None
    env: dict[str, str] = field(default_factory=dict)
    extra_args: dict[str, str | None] = field(default_factory=dict)
    stderr: Callable[[str], None] | None = None

    # Agent behaviour (passed to the CLI)
    model: str | None = None
    permission_mode: PermissionMode | str | None = None
    permission_prompt_tool_name: str | None = None
    max_turns: int | None = None
    system_prompt: str | None = None
    allowed_tools: list[str] = field(default_factory=list)
    disallowed_tools: list[str] = field(default_factory=list)
    include_partial_messages: bool = False

    # Callbacks and in-process tools
    mcp_servers: dict[str, SdkMcpServer | dict[str, Any]] = field(default_factory=dict)
    hooks: dict[HookEvent | str, list[HookMatcher]] = field(default_factory=dict)
    can_use_tool: CanUseTool | None = None

    # Limits
    max_buffer_size: int = DEFAULT_MAX_BUFFER_SIZE
    max_message_queue_size: int = DEFAULT_MAX_MESSAGE_QUEUE_SIZE

    # Timeouts (seconds)
    queue_put_timeout: float = 5.0
    initialize_timeout: float = DEFAULT_TIMEOUT
    control_request_timeout: float = DEFAULT_TIMEOUT
    callback_timeout: float = DEFAULT_TIMEOUT
    stream_close_timeout: float = field(default_factory=stream_close_timeout_from_env)

    def __post_init__(self) -> None:
        if self.max_buffer_size <= 0:
            raise ValueError("max_buffer_size must be positive")
        if self.max_message_queue_size <= 0:
            raise ValueError("max_message_queue_size must be positive")
        if self.can_use_tool is not None and self.permission_prompt_tool_name:
            raise ValueError(
                "can_use_tool callback cannot be used with permission_prompt_tool_name. "
                "Please use one or the other."
            )

    @property
    def effective_initialize_timeout(self) -> float:
        """Initialize waits at least as long as the stream close timeout."""
        return max(self.initialize_timeout, self.stream_close_timeout)

    @property
    def sdk_mcp_servers(self) -> dict[str, SdkMcpServer]:
        """In-process tool servers, keyed by the name the CLI routes with."""
        return {
            name: server
            for name, server in self.mcp_servers.items()
            if isinstance(server, SdkMcpServer)
        }

    @property
    def needs_control_channel(self) -> bool:
        """Whether callbacks require the bidirectional streaming mode."""
        return bool(self.can_use_tool or self.hooks or self.sdk_mcp_servers)
