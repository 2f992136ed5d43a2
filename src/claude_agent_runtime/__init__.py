"""Claude Agent Runtime - control-protocol client for the Claude CLI.

Launches the CLI as a subprocess and speaks its newline-delimited JSON
protocol: conversation messages, control requests in both directions, and
in-process tool servers reachable through the control channel.

Two client APIs:
- query: one-shot exchange, yields typed messages
- AgentClient: interactive session with control commands
"""

from .client import AgentClient, query
from .config import SDK_VERSION, AgentOptions
from .engine import ControlProtocol, EngineState, PendingRequest
from .errors import (
    ClaudeSDKError,
    CLIConnectionError,
    CLIJSONDecodeError,
    CLINotFoundError,
    ControlRequestError,
    ControlTimeoutError,
    EngineClosedError,
    MessageParseError,
    ProcessError,
)
from .mcp import SdkMcpServer, SdkMcpTool, ToolResult, create_sdk_mcp_server, tool
from .protocol import encode_message, parse_message
from .transport import MockTransport, SubprocessCLITransport, Transport
from .types import (
    AssistantMessage,
    ContentBlock,
    HookContext,
    HookEvent,
    HookInput,
    HookMatcher,
    HookOutput,
    Message,
    PermissionMode,
    PermissionResult,
    PermissionResultAllow,
    PermissionResultDeny,
    PermissionRuleValue,
    PermissionUpdate,
    ResultMessage,
    StreamEvent,
    SystemMessage,
    TextBlock,
    ThinkingBlock,
    ToolPermissionContext,
    ToolResultBlock,
    ToolUseBlock,
    UserMessage,
)

__version__ = SDK_VERSION

__all__ = [
    # Clients
    "AgentClient",
    "query",
    "AgentOptions",
    # Engine
    "ControlProtocol",
    "EngineState",
    "PendingRequest",
    # Transports
    "Transport",
    "SubprocessCLITransport",
    "MockTransport",
    # Decoder
    "parse_message",
    "encode_message",
    # Messages
    "Message",
    "UserMessage",
    "AssistantMessage",
    "SystemMessage",
    "ResultMessage",
    "StreamEvent",
    # Content blocks
    "ContentBlock",
    "TextBlock",
    "ThinkingBlock",
    "ToolUseBlock",
    "ToolResultBlock",
    # Permissions
    "PermissionMode",
    "PermissionResult",
    "PermissionResultAllow",
    "PermissionResultDeny",
    "PermissionUpdate",
    "PermissionRuleValue",
    "ToolPermissionContext",
    # Hooks
    "HookEvent",
    "HookMatcher",
    "HookContext",
    "HookInput",
    "HookOutput",
    # Tool server
    "SdkMcpServer",
    "SdkMcpTool",
    "ToolResult",
    "tool",
    "create_sdk_mcp_server",
    # Errors
    "ClaudeSDKError",
    "CLIConnectionError",
    "CLINotFoundError",
    "EngineClosedError",
    "ProcessError",
    "CLIJSONDecodeError",
    "MessageParseError",
    "ControlRequestError",
    "ControlTimeoutError",
]
