"""Typed values exchanged with the Claude CLI.

Conversation messages and content blocks are closed sets of immutable
pydantic models discriminated by their ``type`` field. Frames from the CLI
use snake_case keys; every model also accepts the camelCase spelling of each
field so callers never need to know which convention produced a frame.

Permission results and hook outputs travel the other way and are serialized
with the camelCase keys the CLI expects.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel


class WireModel(BaseModel):
    """Base for frames read from the CLI, tolerant of unknown fields."""

    model_config = ConfigDict(
        frozen=True,
        populate_by_name=True,
        alias_generator=to_camel,
        extra="ignore",
    )


# =============================================================================
# Content Blocks
# =============================================================================


class TextBlock(WireModel):
    """Plain text content."""

    type: Literal["text"] = "text"
    text: str


class ThinkingBlock(WireModel):
    """Extended thinking content with its verification signature."""

    type: Literal["thinking"] = "thinking"
    thinking: str
    signature: str = ""


class ToolUseBlock(WireModel):
    """A tool invocation requested by the model."""

    type: Literal["tool_use"] = "tool_use"
    id: str
    name: str
    input: dict[str, Any] = Field(default_factory=dict)


class ToolResultBlock(WireModel):
    """The outcome of a tool invocation."""

    type: Literal["tool_result"] = "tool_result"
    tool_use_id: str
    content: str | list[dict[str, Any]] | None = None
    is_error: bool | None = None


ContentBlock = Annotated[
    Union[TextBlock, ThinkingBlock, ToolUseBlock, ToolResultBlock],
    Field(discriminator="type"),
]


# =============================================================================
# Conversation Messages
# =============================================================================


AssistantMessageError = Literal[
    "authentication_failed",
    "billing_error",
    "rate_limit",
    "invalid_request",
    "server_error",
    "unknown",
]


class UserMessage(WireModel):
    """A user turn, either a prompt string or a list of blocks."""

    type: Literal["user"] = "user"
    content: str | list[ContentBlock]
    uuid: str | None = None
    parent_tool_use_id: str | None = None
    tool_use_result: dict[str, Any] | None = None


class AssistantMessage(WireModel):
    """A model turn."""

    type: Literal["assistant"] = "assistant"
    content: list[ContentBlock]
    model: str
    parent_tool_use_id: str | None = None
    error: AssistantMessageError | None = None


class SystemMessage(WireModel):
    """A system notification; ``data`` holds the complete raw frame."""

    type: Literal["system"] = "system"
    subtype: str
    data: dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="before")
    @classmethod
    def _data_carries_frame(cls, values: Any) -> Any:
        # data always holds type and subtype, as a decoded frame does
        if isinstance(values, dict) and values.get("subtype") is not None:
            data = {**(values.get("data") or {}), "type": "system", "subtype": values["subtype"]}
            values = {**values, "data": data}
        return values


class ResultMessage(WireModel):
    """Terminal message of a turn, carrying cost and usage."""

    type: Literal["result"] = "result"
    subtype: str
    duration_ms: int
    duration_api_ms: int
    is_error: bool
    num_turns: int
    session_id: str
    total_cost_usd: float | None = None
    usage: dict[str, Any] | None = None
    result: str | None = None
    structured_output: Any = None


class StreamEvent(WireModel):
    """A raw partial-message event, emitted when partial messages are enabled."""

    type: Literal["stream_event"] = "stream_event"
    uuid: str
    session_id: str
    event: dict[str, Any]
    parent_tool_use_id: str | None = None


Message = Annotated[
    Union[UserMessage, AssistantMessage, SystemMessage, ResultMessage, StreamEvent],
    Field(discriminator="type"),
]


# =============================================================================
# Permissions
# =============================================================================


class PermissionMode(str, Enum):
    """How the CLI asks for permission before running tools."""

    DEFAULT = "default"
    ACCEPT_EDITS = "acceptEdits"
    PLAN = "plan"
    BYPASS_PERMISSIONS = "bypassPermissions"


class OutboundModel(BaseModel):
    """Base for payloads sent to the CLI, serialized with camelCase keys."""

    model_config = ConfigDict(populate_by_name=True, alias_generator=to_camel)

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")


class PermissionRuleValue(OutboundModel):
    tool_name: str
    rule_content: str | None = None


class PermissionUpdate(OutboundModel):
    """A change to the CLI's permission rules suggested or applied by a callback."""

    type: Literal[
        "addRules",
        "replaceRules",
        "removeRules",
        "setMode",
        "addDirectories",
        "removeDirectories",
    ]
    rules: list[PermissionRuleValue] | None = None
    behavior: Literal["allow", "deny", "ask"] | None = None
    mode: PermissionMode | None = None
    directories: list[str] | None = None
    destination: Literal["userSettings", "projectSettings", "localSettings", "session"] | None = (
        None
    )


class PermissionResultAllow(OutboundModel):
    """Allow the tool call, optionally rewriting its input."""

    behavior: Literal["allow"] = "allow"
    updated_input: dict[str, Any] | None = None
    updated_permissions: list[PermissionUpdate] | None = None

    def to_wire_for(self, original_input: dict[str, Any]) -> dict[str, Any]:
        """Serialize, falling back to the original input when none was rewritten."""
        updated = self.updated_input if self.updated_input is not None else original_input
        data: dict[str, Any] = {"behavior": "allow", "updatedInput": updated}
        if self.updated_permissions:
            data["updatedPermissions"] = [p.to_wire() for p in self.updated_permissions]
        return data


class PermissionResultDeny(OutboundModel):
    """Deny the tool call, optionally interrupting the whole turn."""

    behavior: Literal["deny"] = "deny"
    message: str = ""
    interrupt: bool = False

    def to_wire_for(self, original_input: dict[str, Any]) -> dict[str, Any]:
        data: dict[str, Any] = {"behavior": "deny", "message": self.message}
        if self.interrupt:
            data["interrupt"] = True
        return data


PermissionResult = Union[PermissionResultAllow, PermissionResultDeny]


@dataclass
class ToolPermissionContext:
    """Extra information handed to a permission callback."""

    suggestions: list[PermissionUpdate] = field(default_factory=list)
    blocked_path: str | None = None
    signal: Any | None = None  # Reserved for abort signal support


CanUseTool = Callable[[str, dict[str, Any], ToolPermissionContext], Awaitable[PermissionResult]]


# =============================================================================
# Hooks
# =============================================================================


class HookEvent(str, Enum):
    """Lifecycle points at which the CLI invokes registered hooks."""

    PRE_TOOL_USE = "PreToolUse"
    POST_TOOL_USE = "PostToolUse"
    POST_TOOL_USE_FAILURE = "PostToolUseFailure"
    USER_PROMPT_SUBMIT = "UserPromptSubmit"
    STOP = "Stop"
    SUBAGENT_STOP = "SubagentStop"
    PRE_COMPACT = "PreCompact"


class BaseHookInput(BaseModel):
    """Fields the CLI sends with every hook invocation.

    Hook inputs arrive in snake_case. Fields this runtime does not model are
    kept as extras, so data from newer CLI versions stays reachable.
    """

    model_config = ConfigDict(frozen=True, extra="allow")

    session_id: str | None = None
    transcript_path: str | None = None
    cwd: str | None = None
    permission_mode: str | None = None


class PreToolUseHookInput(BaseHookInput):
    hook_event_name: Literal["PreToolUse"]
    tool_name: str
    tool_input: dict[str, Any] = Field(default_factory=dict)
    tool_use_id: str | None = None


class PostToolUseHookInput(BaseHookInput):
    hook_event_name: Literal["PostToolUse"]
    tool_name: str
    tool_input: dict[str, Any] = Field(default_factory=dict)
    tool_response: Any = None
    tool_use_id: str | None = None


class PostToolUseFailureHookInput(BaseHookInput):
    hook_event_name: Literal["PostToolUseFailure"]
    tool_name: str
    tool_input: dict[str, Any] = Field(default_factory=dict)
    tool_use_id: str | None = None
    error: str
    is_interrupt: bool | None = None


class UserPromptSubmitHookInput(BaseHookInput):
    hook_event_name: Literal["UserPromptSubmit"]
    prompt: str


class StopHookInput(BaseHookInput):
    hook_event_name: Literal["Stop"]
    stop_hook_active: bool = False


class SubagentStopHookInput(BaseHookInput):
    hook_event_name: Literal["SubagentStop"]
    stop_hook_active: bool = False


class PreCompactHookInput(BaseHookInput):
    """Sent before the conversation is compacted, by hand or automatically."""

    hook_event_name: Literal["PreCompact"]
    trigger: Literal["manual", "auto"]
    custom_instructions: str | None = None


HookInput = Annotated[
    Union[
        PreToolUseHookInput,
        PostToolUseHookInput,
        PostToolUseFailureHookInput,
        UserPromptSubmitHookInput,
        StopHookInput,
        SubagentStopHookInput,
        PreCompactHookInput,
    ],
    Field(discriminator="hook_event_name"),
]


@dataclass
class HookContext:
    """Context passed to hook callbacks alongside the hook input."""

    tool_use_id: str | None = None
    signal: Any | None = None  # Reserved for abort signal support


class HookOutput(OutboundModel):
    """Structured hook result.

    ``continue_`` and ``async_`` carry a trailing underscore because the wire
    names are Python keywords; they serialize as ``continue`` and ``async``.
    """

    continue_: bool | None = Field(default=None, alias="continue")
    suppress_output: bool | None = None
    stop_reason: str | None = None
    decision: Literal["block"] | None = None
    system_message: str | None = None
    reason: str | None = None
    hook_specific_output: dict[str, Any] | None = None
    async_: bool | None = Field(default=None, alias="async")
    async_timeout: int | None = None


HookCallback = Callable[[HookInput, HookContext], Awaitable[HookOutput | dict[str, Any]]]


@dataclass
class HookMatcher:
    """Callbacks registered for one hook event, filtered by tool name pattern.

    Attributes:
        matcher: Tool name pattern such as "Bash" or "Write|Edit"; None matches all
        hooks: Callbacks invoked in order when the matcher applies
        timeout: Seconds the CLI and this runtime allow each callback
    """

    matcher: str | None = None
    hooks: list[HookCallback] = field(default_factory=list)
    timeout: float | None = None
