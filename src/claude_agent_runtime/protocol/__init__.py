"""Wire protocol: conversation message decoding and control envelopes."""

from .control import (
    INBOUND_SUBTYPES,
    CanUseToolRequest,
    ControlError,
    ControlRequest,
    ControlResponse,
    ControlSuccess,
    HookCallbackRequest,
    InitializeRequest,
    InterruptRequest,
    McpMessageRequest,
    McpStatusRequest,
    RewindFilesRequest,
    SetModelRequest,
    SetPermissionModeRequest,
)
from .parser import MESSAGE_TYPES, encode_message, parse_hook_input, parse_message

__all__ = [
    # Decoder
    "parse_message",
    "encode_message",
    "parse_hook_input",
    "MESSAGE_TYPES",
    # Envelopes
    "ControlRequest",
    "ControlResponse",
    "ControlSuccess",
    "ControlError",
    "INBOUND_SUBTYPES",
    # Request payloads
    "InterruptRequest",
    "McpStatusRequest",
    "SetModelRequest",
    "SetPermissionModeRequest",
    "RewindFilesRequest",
    "InitializeRequest",
    "CanUseToolRequest",
    "HookCallbackRequest",
    "McpMessageRequest",
]
