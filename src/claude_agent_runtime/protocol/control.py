"""Control protocol envelopes.

Control requests and responses share the framed channel with conversation
messages but are never delivered to the consumer. Each request carries a
``request_id`` that its response echoes back.

Outbound requests (sent by this side):
    interrupt, set_model, set_permission_mode, rewind_files, mcp_status,
    initialize

Inbound requests (sent by the CLI, answered by this side):
    can_use_tool, hook_callback, mcp_message

Example request:
    {"type": "control_request", "request_id": "req_1_ab12cd34",
     "request": {"subtype": "set_model", "model": "claude-sonnet-4-5"}}

Example responses:
    {"type": "control_response",
     "response": {"subtype": "success", "request_id": "req_1_ab12cd34", "response": {}}}
    {"type": "control_response",
     "response": {"subtype": "error", "request_id": "req_1_ab12cd34", "error": "..."}}
"""

from __future__ import annotations

from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class ControlModel(BaseModel):
    """Base for control envelopes; accepts both snake_case and camelCase keys."""

    model_config = ConfigDict(populate_by_name=True, alias_generator=to_camel)

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(exclude_none=True, mode="json")


# =============================================================================
# Request Payloads
# =============================================================================


class InterruptRequest(ControlModel):
    subtype: Literal["interrupt"] = "interrupt"


class McpStatusRequest(ControlModel):
    subtype: Literal["mcp_status"] = "mcp_status"


class SetModelRequest(ControlModel):
    """Switch model; ``None`` restores the CLI default."""

    subtype: Literal["set_model"] = "set_model"
    model: str | None = None

    def to_wire(self) -> dict[str, Any]:
        return {"subtype": self.subtype, "model": self.model}


class SetPermissionModeRequest(ControlModel):
    subtype: Literal["set_permission_mode"] = "set_permission_mode"
    mode: str


class RewindFilesRequest(ControlModel):
    """Restore files to their state at the given user message."""

    subtype: Literal["rewind_files"] = "rewind_files"
    user_message_id: str


class InitializeRequest(ControlModel):
    """Handshake carrying hook registrations keyed by event name."""

    subtype: Literal["initialize"] = "initialize"
    hooks: dict[str, list[dict[str, Any]]] | None = None


class CanUseToolRequest(ControlModel):
    subtype: Literal["can_use_tool"] = "can_use_tool"
    tool_name: str
    input: dict[str, Any] = Field(default_factory=dict)
    permission_suggestions: list[dict[str, Any]] | None = None
    blocked_path: str | None = None


class HookCallbackRequest(ControlModel):
    subtype: Literal["hook_callback"] = "hook_callback"
    callback_id: str
    input: dict[str, Any] = Field(default_factory=dict)
    tool_use_id: str | None = None


class McpMessageRequest(ControlModel):
    subtype: Literal["mcp_message"] = "mcp_message"
    server_name: str
    message: dict[str, Any]


ControlRequestPayload = Annotated[
    Union[
        InterruptRequest,
        McpStatusRequest,
        SetModelRequest,
        SetPermissionModeRequest,
        RewindFilesRequest,
        InitializeRequest,
        CanUseToolRequest,
        HookCallbackRequest,
        McpMessageRequest,
    ],
    Field(discriminator="subtype"),
]

# Subtypes the CLI may send; any other inbound subtype is a protocol error.
INBOUND_SUBTYPES = frozenset({"can_use_tool", "hook_callback", "mcp_message"})


class ControlRequest(ControlModel):
    """Envelope for a control request in either direction."""

    type: Literal["control_request"] = "control_request"
    request_id: str
    request: ControlRequestPayload

    def to_wire(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "request_id": self.request_id,
            "request": self.request.to_wire(),
        }


# =============================================================================
# Responses
# =============================================================================


class ControlSuccess(ControlModel):
    subtype: Literal["success"] = "success"
    request_id: str
    response: dict[str, Any] | None = None


class ControlError(ControlModel):
    subtype: Literal["error"] = "error"
    request_id: str
    error: str = "Unknown error"


ControlResponsePayload = Annotated[
    Union[ControlSuccess, ControlError],
    Field(discriminator="subtype"),
]


class ControlResponse(ControlModel):
    """Envelope for a control response in either direction."""

    type: Literal["control_response"] = "control_response"
    response: ControlResponsePayload

    @classmethod
    def success(cls, request_id: str, payload: dict[str, Any] | None = None) -> ControlResponse:
        """Create a success response."""
        return cls(response=ControlSuccess(request_id=request_id, response=payload or {}))

    @classmethod
    def error(cls, request_id: str, message: str) -> ControlResponse:
        """Create an error response."""
        return cls(response=ControlError(request_id=request_id, error=message))
