"""Exception hierarchy for the agent runtime.

Every error raised by this package derives from ClaudeSDKError so callers
can catch the whole family with one clause:

- CLIConnectionError: the CLI process could not be reached or is gone
  - CLINotFoundError: the executable does not exist
  - EngineClosedError: the engine was closed while a call was waiting
- ProcessError: the CLI exited with a non-zero status
- CLIJSONDecodeError: a framed line could not be decoded
- MessageParseError: a decoded frame is not a known message
- ControlRequestError: the CLI answered a control request with an error
- ControlTimeoutError: the CLI did not answer a control request in time
"""

from __future__ import annotations

from typing import Any


class ClaudeSDKError(Exception):
    """Base class for all agent runtime errors."""


class CLIConnectionError(ClaudeSDKError):
    """Raised when the CLI cannot be connected to or written to."""


class CLINotFoundError(CLIConnectionError):
    """Raised when the CLI executable cannot be located."""

    def __init__(self, message: str = "Claude Code not found", cli_path: str | None = None):
        if cli_path:
            message = f"{message}: {cli_path}"
        super().__init__(message)
        self.cli_path = cli_path


class EngineClosedError(CLIConnectionError):
    """Raised to waiters when the engine shuts down underneath them."""

    def __init__(self, message: str = "Control protocol engine closed"):
        super().__init__(message)


class ProcessError(ClaudeSDKError):
    """Raised when the CLI process exits with a failure status."""

    def __init__(self, message: str, exit_code: int | None = None, stderr: str | None = None):
        self.exit_code = exit_code
        self.stderr = stderr

        if exit_code is not None:
            message = f"{message} (exit code: {exit_code})"
        if stderr:
            message = f"{message}\nError output: {stderr}"

        super().__init__(message)


class CLIJSONDecodeError(ClaudeSDKError):
    """Raised when a line from the CLI cannot be decoded as JSON."""

    def __init__(self, line: str, original_error: Exception, message: str | None = None):
        self.line = line
        self.original_error = original_error
        super().__init__(message or f"Failed to decode JSON: {line[:100]}...")


class MessageParseError(ClaudeSDKError):
    """Raised when a decoded frame does not match any known message shape."""

    def __init__(self, message: str, data: dict[str, Any] | None = None):
        self.data = data
        super().__init__(message)


class ControlRequestError(ClaudeSDKError):
    """Raised when the CLI replies to a control request with an error."""

    def __init__(self, message: str, subtype: str | None = None, request_id: str | None = None):
        self.subtype = subtype
        self.request_id = request_id
        super().__init__(message)


class ControlTimeoutError(ClaudeSDKError, TimeoutError):
    """Raised when a control request receives no reply within its timeout."""

    def __init__(self, subtype: str, request_id: str, timeout: float):
        self.subtype = subtype
        self.request_id = request_id
        self.timeout = timeout
        super().__init__(f"Control request timeout: {subtype} ({request_id}) after {timeout}s")
