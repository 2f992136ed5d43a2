"""Embedded tool server answering JSON-RPC routed through the control channel."""

from .jsonrpc import (
    JsonRpcError,
    JsonRpcErrorCode,
    JsonRpcProtocolError,
    JsonRpcRequest,
    JsonRpcResponse,
)
from .server import (
    PROTOCOL_VERSION,
    SdkMcpServer,
    SdkMcpTool,
    ToolResult,
    create_sdk_mcp_server,
    derive_input_schema,
    tool,
)

__all__ = [
    "PROTOCOL_VERSION",
    "SdkMcpServer",
    "SdkMcpTool",
    "ToolResult",
    "tool",
    "create_sdk_mcp_server",
    "derive_input_schema",
    # JSON-RPC
    "JsonRpcRequest",
    "JsonRpcResponse",
    "JsonRpcError",
    "JsonRpcErrorCode",
    "JsonRpcProtocolError",
]
