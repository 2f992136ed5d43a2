"""Decoding of raw CLI frames into typed conversation messages.

The CLI nests the content of user and assistant turns under a ``message``
key; the typed models flatten that so callers see ``msg.content`` directly.
``encode_message`` performs the reverse mapping.
"""

from __future__ import annotations

import logging
from typing import Any

from pydantic import TypeAdapter, ValidationError

from ..errors import MessageParseError
from ..types import (
    AssistantMessage,
    HookInput,
    Message,
    ResultMessage,
    StreamEvent,
    SystemMessage,
    UserMessage,
)

logger = logging.getLogger(__name__)

MESSAGE_TYPES = ("user", "assistant", "system", "result", "stream_event")

_hook_input_adapter: TypeAdapter[HookInput] = TypeAdapter(HookInput)


def parse_message(data: dict[str, Any]) -> Message:
    """Parse a raw frame into a typed message.

    Args:
        data: Decoded JSON object from the CLI

    Returns:
        One of UserMessage, AssistantMessage, SystemMessage, ResultMessage
        or StreamEvent

    Raises:
        MessageParseError: If the frame has no known ``type`` or is missing
            a required field. The raw frame is attached as ``data``.
    """
    if not isinstance(data, dict):
        raise MessageParseError(
            f"Invalid message data type (expected dict, got {type(data).__name__})",
            data,
        )

    message_type = data.get("type")
    if not message_type:
        raise MessageParseError("Message missing 'type' field", data)

    try:
        if message_type == "user":
            return UserMessage.model_validate(_flatten_turn(data))
        if message_type == "assistant":
            payload = _flatten_turn(data)
            nested = data.get("message")
            if isinstance(nested, dict) and "model" in nested:
                payload["model"] = nested["model"]
            if isinstance(nested, dict) and "error" not in payload and nested.get("error"):
                payload["error"] = nested["error"]
            return AssistantMessage.model_validate(payload)
        if message_type == "system":
            return SystemMessage.model_validate(
                {"subtype": data.get("subtype"), "data": data}
            )
        if message_type == "result":
            return ResultMessage.model_validate(data)
        if message_type == "stream_event":
            return StreamEvent.model_validate(data)
    except ValidationError as e:
        raise MessageParseError(f"Invalid {message_type} message: {e}", data) from e

    raise MessageParseError(f"Unknown message type: {message_type}", data)


def _flatten_turn(data: dict[str, Any]) -> dict[str, Any]:
    """Lift ``message.content`` to the top level of a user/assistant frame."""
    nested = data.get("message")
    if not isinstance(nested, dict) or "content" not in nested:
        raise MessageParseError(
            f"Missing required field in {data.get('type')} message: message.content",
            data,
        )
    payload = {key: value for key, value in data.items() if key != "message"}
    payload["content"] = nested["content"]
    return payload


def encode_message(message: Message) -> dict[str, Any]:
    """Encode a typed message back into the CLI's wire frame.

    ``parse_message(encode_message(m)) == m`` holds for every message type.
    """
    if isinstance(message, UserMessage):
        frame = message.model_dump(exclude={"content"}, exclude_none=True)
        content = message.content
        if not isinstance(content, str):
            content = [block.model_dump(exclude_none=True) for block in content]
        frame["message"] = {"role": "user", "content": content}
        return frame

    if isinstance(message, AssistantMessage):
        frame = message.model_dump(exclude={"content", "model"}, exclude_none=True)
        frame["message"] = {
            "role": "assistant",
            "model": message.model,
            "content": [block.model_dump(exclude_none=True) for block in message.content],
        }
        return frame

    if isinstance(message, SystemMessage):
        return {**message.data, "type": "system", "subtype": message.subtype}

    return message.model_dump(exclude_none=True)


def parse_hook_input(data: dict[str, Any]) -> HookInput:
    """Parse the input of a hook_callback request, keyed by ``hook_event_name``.

    Raises:
        MessageParseError: If the event is unknown or a required field is missing
    """
    try:
        return _hook_input_adapter.validate_python(data)
    except ValidationError as e:
        raise MessageParseError(f"Invalid hook input: {e}", data) from e
