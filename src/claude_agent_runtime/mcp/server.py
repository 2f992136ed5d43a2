"""In-process tool server reachable through the control channel.

The CLI treats an ``{"type": "sdk"}`` MCP server like any other MCP server,
but instead of spawning it, forwards each JSON-RPC message inside an
``mcp_message`` control request. SdkMcpServer answers those messages by
calling application-supplied Python functions.

Usage:
    from claude_agent_runtime import tool, create_sdk_mcp_server, ToolResult

    @tool("add", "Add two numbers")
    async def add(a: float, b: float) -> ToolResult:
        return ToolResult.text(str(a + b))

    server = create_sdk_mcp_server("calculator", tools=[add])
    options = AgentOptions(mcp_servers={"calculator": server})
"""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
import typing
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

from pydantic import ValidationError

from .jsonrpc import (
    JsonRpcErrorCode,
    JsonRpcProtocolError,
    JsonRpcRequest,
    JsonRpcResponse,
    create_error_response,
)

logger = logging.getLogger(__name__)

PROTOCOL_VERSION = "2024-11-05"

OPEN_OBJECT_SCHEMA: dict[str, Any] = {"type": "object", "properties": {}}

_SCALAR_SCHEMAS: dict[Any, dict[str, Any]] = {
    str: {"type": "string"},
    int: {"type": "integer"},
    float: {"type": "number"},
    bool: {"type": "boolean"},
}


@dataclass
class ToolResult:
    """Result returned from a tool handler.

    Attributes:
        content: MCP content items, e.g. ``{"type": "text", "text": "..."}``
        is_error: Marks a tool-level failure the model should see; this is
            distinct from a JSON-RPC error, which means the call itself failed
    """

    content: list[dict[str, Any]] = field(default_factory=list)
    is_error: bool = False

    @classmethod
    def text(cls, text: str) -> ToolResult:
        return cls(content=[{"type": "text", "text": text}])

    @classmethod
    def error(cls, message: str) -> ToolResult:
        return cls(content=[{"type": "text", "text": message}], is_error=True)

    @classmethod
    def image(cls, data: str, mime_type: str) -> ToolResult:
        """Create a result holding a base64-encoded image."""
        return cls(content=[{"type": "image", "data": data, "mimeType": mime_type}])

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"content": self.content}
        if self.is_error:
            result["isError"] = True
        return result


ToolHandler = Callable[..., Any]


@dataclass
class SdkMcpTool:
    """A tool definition: name, description, input schema and handler.

    When ``input_schema`` is omitted it is derived from the handler's
    parameters. Handlers whose parameters cannot be inspected, or which take
    a single mapping parameter, receive the raw argument map and advertise
    an open object schema.
    """

    name: str
    description: str
    handler: ToolHandler
    input_schema: dict[str, Any] | None = None
    parameter_names: list[str] | None = field(init=False, default=None)

    def __post_init__(self) -> None:
        if not self.name:
            raise ValueError("Tool name is required")
        if not callable(self.handler):
            raise ValueError(f"Tool {self.name} handler must be callable")

        self.parameter_names = _keyword_parameters(self.handler)
        if self.input_schema is None:
            self.input_schema = derive_input_schema(self.handler)

    @property
    def takes_raw_arguments(self) -> bool:
        return self.parameter_names is None

    def to_dict(self) -> dict[str, Any]:
        """Tool listing entry for ``tools/list``."""
        return {
            "name": self.name,
            "description": self.description,
            "inputSchema": self.input_schema,
        }

    async def call(self, arguments: dict[str, Any]) -> ToolResult:
        """Invoke the handler and normalize whatever it returns."""
        if self.parameter_names is None:
            args: tuple[Any, ...] = (arguments,)
            kwargs: dict[str, Any] = {}
        else:
            args = ()
            kwargs = {k: v for k, v in arguments.items() if k in self.parameter_names}

        if inspect.iscoroutinefunction(self.handler):
            result = await self.handler(*args, **kwargs)
        else:
            result = await asyncio.to_thread(self.handler, *args, **kwargs)
            if inspect.isawaitable(result):
                result = await result

        return _to_tool_result(result)


def tool(
    name: str,
    description: str,
    input_schema: dict[str, Any] | None = None,
) -> Callable[[ToolHandler], SdkMcpTool]:
    """Decorator turning a function into an SdkMcpTool."""

    def decorator(handler: ToolHandler) -> SdkMcpTool:
        return SdkMcpTool(
            name=name,
            description=description,
            handler=handler,
            input_schema=input_schema,
        )

    return decorator


# =============================================================================
# Schema derivation
# =============================================================================


def _signature(handler: ToolHandler) -> inspect.Signature | None:
    try:
        return inspect.signature(handler)
    except (TypeError, ValueError):
        return None


def _is_mapping_annotation(annotation: Any) -> bool:
    origin = typing.get_origin(annotation) or annotation
    return isinstance(origin, type) and issubclass(origin, Mapping)


def _keyword_parameters(handler: ToolHandler) -> list[str] | None:
    """Names to pass arguments by, or None when the handler takes the raw map."""
    signature = _signature(handler)
    if signature is None:
        return None

    params = list(signature.parameters.values())
    if any(p.kind in (p.VAR_POSITIONAL, p.VAR_KEYWORD, p.POSITIONAL_ONLY) for p in params):
        return None

    if len(params) == 1:
        hints = _type_hints(handler)
        annotation = hints.get(params[0].name, params[0].annotation)
        if annotation is inspect.Parameter.empty or _is_mapping_annotation(annotation):
            return None

    return [p.name for p in params]


def _type_hints(handler: ToolHandler) -> dict[str, Any]:
    try:
        return typing.get_type_hints(handler)
    except Exception:
        # Unresolvable forward references; fall back to raw annotations
        return {}


def schema_for_annotation(annotation: Any) -> dict[str, Any]:
    """Map a Python type annotation to a JSON schema fragment."""
    if annotation is inspect.Parameter.empty or annotation is Any:
        return {}

    if annotation in _SCALAR_SCHEMAS:
        return dict(_SCALAR_SCHEMAS[annotation])

    origin = typing.get_origin(annotation)
    args = typing.get_args(annotation)

    # Optional[X] and X | None
    if args and type(None) in args:
        remaining = [a for a in args if a is not type(None)]
        if len(remaining) == 1:
            return schema_for_annotation(remaining[0])
        return {}

    container = origin or annotation
    if container in (list, tuple, set, frozenset):
        items = schema_for_annotation(args[0]) if args else {}
        return {"type": "array", "items": items or {"type": "object"}}
    if _is_mapping_annotation(container):
        return {"type": "object", "additionalProperties": True}

    return {}


def derive_input_schema(handler: ToolHandler) -> dict[str, Any]:
    """Build an input schema from a handler's parameters."""
    signature = _signature(handler)
    if signature is None or _keyword_parameters(handler) is None:
        return dict(OPEN_OBJECT_SCHEMA)

    hints = _type_hints(handler)

    properties: dict[str, Any] = {}
    required: list[str] = []
    for param in signature.parameters.values():
        properties[param.name] = schema_for_annotation(hints.get(param.name, param.annotation))
        if param.default is inspect.Parameter.empty:
            required.append(param.name)

    schema: dict[str, Any] = {"type": "object", "properties": properties}
    if required:
        schema["required"] = required
    return schema


def _to_tool_result(value: Any) -> ToolResult:
    if isinstance(value, ToolResult):
        return value
    if isinstance(value, dict) and "content" in value:
        return ToolResult(
            content=list(value["content"]),
            is_error=bool(value.get("isError") or value.get("is_error")),
        )
    if value is None:
        return ToolResult()
    if isinstance(value, str):
        return ToolResult.text(value)
    if isinstance(value, (dict, list)):
        return ToolResult.text(json.dumps(value, default=str))
    return ToolResult.text(str(value))


# =============================================================================
# Server
# =============================================================================


class SdkMcpServer:
    """Minimal JSON-RPC 2.0 responder exposing a fixed set of tools.

    The tool registry is built once at construction and never mutated, so
    concurrent ``tools/call`` requests need no locking.
    """

    def __init__(
        self,
        name: str,
        version: str = "1.0.0",
        tools: list[SdkMcpTool] | None = None,
    ) -> None:
        if not name:
            raise ValueError("Server name is required")
        self.name = name
        self.version = version

        registry: dict[str, SdkMcpTool] = {}
        for t in tools or []:
            if t.name in registry:
                raise ValueError(f"Duplicate tool name: {t.name}")
            registry[t.name] = t
        self._tools = registry

        self._methods: dict[str, Callable[[dict[str, Any]], Any]] = {
            "initialize": self._initialize,
            "tools/list": self._list_tools,
            "tools/call": self._call_tool,
            "notifications/initialized": self._initialized,
        }

    @property
    def tools(self) -> list[SdkMcpTool]:
        return list(self._tools.values())

    def get_tool(self, name: str) -> SdkMcpTool | None:
        return self._tools.get(name)

    def to_config(self) -> dict[str, Any]:
        """Entry for ``--mcp-config``; the CLI routes calls back to us by name."""
        return {"type": "sdk", "name": self.name}

    async def handle_message(self, message: dict[str, Any]) -> dict[str, Any]:
        """Answer one JSON-RPC message. Never raises.

        Returns:
            The JSON-RPC response as a wire dict
        """
        return (await self._process(message)).to_wire()

    async def _process(self, message: dict[str, Any]) -> JsonRpcResponse:
        try:
            request = JsonRpcRequest.model_validate(message)
        except ValidationError as e:
            request_id = message.get("id") if isinstance(message, dict) else None
            return create_error_response(
                request_id, JsonRpcErrorCode.INVALID_REQUEST, f"Invalid request: {e}"
            )

        handler = self._methods.get(request.method)
        if handler is None:
            return create_error_response(
                request.id,
                JsonRpcErrorCode.METHOD_NOT_FOUND,
                f"Method '{request.method}' not found",
            )

        try:
            result = await handler(request.params or {})
            return JsonRpcResponse(id=request.id, result=result)
        except JsonRpcProtocolError as e:
            return create_error_response(request.id, e.code, e.message, e.data)
        except Exception as e:
            logger.exception(f"Error handling {request.method} on server {self.name}: {e}")
            return create_error_response(request.id, JsonRpcErrorCode.INTERNAL_ERROR, str(e))

    async def _initialize(self, params: dict[str, Any]) -> dict[str, Any]:
        return {
            "protocolVersion": PROTOCOL_VERSION,
            "capabilities": {"tools": {}},
            "serverInfo": {"name": self.name, "version": self.version},
        }

    async def _initialized(self, params: dict[str, Any]) -> dict[str, Any]:
        return {}

    async def _list_tools(self, params: dict[str, Any]) -> dict[str, Any]:
        return {"tools": [t.to_dict() for t in self._tools.values()]}

    async def _call_tool(self, params: dict[str, Any]) -> dict[str, Any]:
        name = params.get("name")
        if not name:
            raise JsonRpcProtocolError(JsonRpcErrorCode.INVALID_PARAMS, "Missing tool name")

        sdk_tool = self._tools.get(name)
        if sdk_tool is None:
            raise JsonRpcProtocolError(
                JsonRpcErrorCode.METHOD_NOT_FOUND, f"Tool '{name}' not found"
            )

        arguments = params.get("arguments") or {}
        logger.debug(f"Calling tool {name} on server {self.name}")
        result = await sdk_tool.call(arguments)
        return result.to_dict()


def create_sdk_mcp_server(
    name: str,
    version: str = "1.0.0",
    tools: list[SdkMcpTool] | None = None,
) -> SdkMcpServer:
    """Create an in-process tool server for ``AgentOptions.mcp_servers``."""
    return SdkMcpServer(name=name, version=version, tools=tools)
