"""Tests for the message decoder.

Covers:
- Decoding each message type and content block type
- Parse errors carrying the raw frame
- Tolerance for unknown fields and camelCase keys
- Encoding back to the wire frame
- Decoding hook callback inputs by event name
"""

from __future__ import annotations

import pytest

from claude_agent_runtime.errors import MessageParseError
from claude_agent_runtime.protocol import encode_message, parse_hook_input, parse_message
from claude_agent_runtime.types import (
    AssistantMessage,
    PostToolUseFailureHookInput,
    PostToolUseHookInput,
    PreCompactHookInput,
    PreToolUseHookInput,
    ResultMessage,
    StopHookInput,
    StreamEvent,
    SubagentStopHookInput,
    SystemMessage,
    TextBlock,
    ThinkingBlock,
    ToolResultBlock,
    ToolUseBlock,
    UserMessage,
    UserPromptSubmitHookInput,
)

# =============================================================================
# Fixtures
# =============================================================================


def assistant_frame(**overrides):
    frame = {
        "type": "assistant",
        "message": {
            "role": "assistant",
            "model": "claude-sonnet-4-5",
            "content": [{"type": "text", "text": "Hello"}],
        },
        "parent_tool_use_id": None,
        "session_id": "sess_1",
    }
    frame.update(overrides)
    return frame


def result_frame(**overrides):
    frame = {
        "type": "result",
        "subtype": "success",
        "duration_ms": 1200,
        "duration_api_ms": 900,
        "is_error": False,
        "num_turns": 2,
        "session_id": "sess_1",
        "total_cost_usd": 0.0125,
        "usage": {"input_tokens": 10, "output_tokens": 20},
        "result": "Done",
    }
    frame.update(overrides)
    return frame


# =============================================================================
# Tests: Message Types
# =============================================================================


class TestParseMessageTypes:
    """Test decoding of each conversation message type."""

    def test_user_message_with_string_content(self):
        """String content is kept as a string."""
        msg = parse_message(
            {"type": "user", "message": {"role": "user", "content": "Hi"}, "uuid": "u-1"}
        )
        assert isinstance(msg, UserMessage)
        assert msg.content == "Hi"
        assert msg.uuid == "u-1"
        assert msg.parent_tool_use_id is None

    def test_user_message_with_tool_result_blocks(self):
        """Block lists are decoded by each block's type."""
        msg = parse_message(
            {
                "type": "user",
                "message": {
                    "role": "user",
                    "content": [
                        {
                            "type": "tool_result",
                            "tool_use_id": "toolu_1",
                            "content": "file contents",
                            "is_error": False,
                        }
                    ],
                },
                "parent_tool_use_id": "toolu_0",
                "tool_use_result": {"stdout": "ok"},
            }
        )
        assert isinstance(msg, UserMessage)
        block = msg.content[0]
        assert isinstance(block, ToolResultBlock)
        assert block.tool_use_id == "toolu_1"
        assert block.is_error is False
        assert msg.parent_tool_use_id == "toolu_0"
        assert msg.tool_use_result == {"stdout": "ok"}

    def test_assistant_message_with_all_block_types(self):
        """Assistant content may mix text, thinking and tool use."""
        frame = assistant_frame()
        frame["message"]["content"] = [
            {"type": "thinking", "thinking": "Let me look", "signature": "sig"},
            {"type": "text", "text": "Checking"},
            {"type": "tool_use", "id": "toolu_1", "name": "Read", "input": {"path": "a.py"}},
        ]
        msg = parse_message(frame)

        assert isinstance(msg, AssistantMessage)
        assert msg.model == "claude-sonnet-4-5"
        thinking, text, tool_use = msg.content
        assert isinstance(thinking, ThinkingBlock) and thinking.signature == "sig"
        assert isinstance(text, TextBlock) and text.text == "Checking"
        assert isinstance(tool_use, ToolUseBlock) and tool_use.input == {"path": "a.py"}

    def test_assistant_message_error(self):
        """Assistant error codes are decoded."""
        msg = parse_message(assistant_frame(error="rate_limit"))
        assert isinstance(msg, AssistantMessage)
        assert msg.error == "rate_limit"

    def test_system_message_keeps_raw_frame(self):
        """System messages expose the whole frame as data."""
        frame = {"type": "system", "subtype": "init", "cwd": "/tmp", "tools": ["Read"]}
        msg = parse_message(frame)
        assert isinstance(msg, SystemMessage)
        assert msg.subtype == "init"
        assert msg.data["tools"] == ["Read"]

    def test_result_message(self):
        """Result messages carry cost and usage."""
        msg = parse_message(result_frame())
        assert isinstance(msg, ResultMessage)
        assert msg.num_turns == 2
        assert msg.total_cost_usd == pytest.approx(0.0125)
        assert msg.result == "Done"

    def test_stream_event(self):
        """Partial message events are decoded."""
        msg = parse_message(
            {
                "type": "stream_event",
                "uuid": "e-1",
                "session_id": "sess_1",
                "event": {"type": "content_block_delta"},
            }
        )
        assert isinstance(msg, StreamEvent)
        assert msg.event["type"] == "content_block_delta"


# =============================================================================
# Tests: Errors
# =============================================================================


class TestParseErrors:
    """Test parse failures."""

    def test_unknown_type_carries_raw_frame(self):
        """Unknown discriminators fail with the offending frame attached."""
        frame = {"type": "telepathy", "payload": 1}
        with pytest.raises(MessageParseError) as exc_info:
            parse_message(frame)
        assert exc_info.value.data == frame

    def test_missing_type(self):
        """Frames without a type are rejected."""
        with pytest.raises(MessageParseError, match="missing 'type'"):
            parse_message({"message": {}})

    def test_non_dict_input(self):
        """Only JSON objects are messages."""
        with pytest.raises(MessageParseError):
            parse_message(["not", "a", "dict"])  # type: ignore[arg-type]

    def test_unknown_block_type(self):
        """An unknown content block type fails the whole message."""
        frame = assistant_frame()
        frame["message"]["content"] = [{"type": "hologram"}]
        with pytest.raises(MessageParseError) as exc_info:
            parse_message(frame)
        assert exc_info.value.data == frame

    def test_missing_required_result_field(self):
        """Result messages need their accounting fields."""
        frame = result_frame()
        del frame["num_turns"]
        with pytest.raises(MessageParseError):
            parse_message(frame)

    def test_assistant_without_model(self):
        """Assistant messages need a model."""
        frame = assistant_frame()
        del frame["message"]["model"]
        with pytest.raises(MessageParseError):
            parse_message(frame)

    def test_user_without_content(self):
        """User messages need message.content."""
        with pytest.raises(MessageParseError, match="message.content"):
            parse_message({"type": "user", "message": {"role": "user"}})


# =============================================================================
# Tests: Tolerance
# =============================================================================


class TestParseTolerance:
    """Test tolerance for extra fields and naming conventions."""

    def test_unknown_fields_ignored(self):
        """Additive fields from newer CLI versions are ignored."""
        msg = parse_message(result_frame(new_field={"x": 1}))
        assert isinstance(msg, ResultMessage)

    def test_camel_case_result(self):
        """camelCase keys decode to the same value as snake_case keys."""
        camel = {
            "type": "result",
            "subtype": "success",
            "durationMs": 1200,
            "durationApiMs": 900,
            "isError": False,
            "numTurns": 2,
            "sessionId": "sess_1",
            "totalCostUsd": 0.0125,
            "usage": {"input_tokens": 10, "output_tokens": 20},
            "result": "Done",
        }
        assert parse_message(camel) == parse_message(result_frame())

    def test_camel_case_blocks(self):
        """Nested blocks also accept camelCase keys."""
        msg = parse_message(
            {
                "type": "user",
                "message": {
                    "content": [{"type": "tool_result", "toolUseId": "toolu_9", "isError": True}]
                },
                "parentToolUseId": "toolu_8",
            }
        )
        assert isinstance(msg, UserMessage)
        assert msg.parent_tool_use_id == "toolu_8"
        assert msg.content[0].tool_use_id == "toolu_9"
        assert msg.content[0].is_error is True

    def test_messages_are_immutable(self):
        """Decoded messages cannot be modified."""
        msg = parse_message(result_frame())
        with pytest.raises(Exception):
            msg.num_turns = 5  # type: ignore[misc]


# =============================================================================
# Tests: Encoding
# =============================================================================


class TestEncodeMessage:
    """Test encoding messages back to wire frames."""

    @pytest.mark.parametrize(
        "frame",
        [
            {"type": "user", "message": {"role": "user", "content": "Hi"}},
            assistant_frame(),
            {"type": "system", "subtype": "init", "cwd": "/tmp"},
            result_frame(),
            result_frame(total_cost_usd=None, usage=None, result=None),
            {"type": "stream_event", "uuid": "e", "session_id": "s", "event": {"a": 1}},
        ],
    )
    def test_decode_encode_decode_is_stable(self, frame):
        """Encoding a decoded message decodes back to an equal value."""
        msg = parse_message(frame)
        assert parse_message(encode_message(msg)) == msg

    def test_constructed_values_survive_encoding(self):
        """Values built in code, including absent optionals, encode losslessly."""
        messages = [
            UserMessage(content=[TextBlock(text="a"), ToolResultBlock(tool_use_id="t")]),
            AssistantMessage(
                content=[ToolUseBlock(id="t", name="Bash", input={"cmd": "ls"})],
                model="m",
                parent_tool_use_id="p",
            ),
            ResultMessage(
                subtype="error_max_turns",
                duration_ms=1,
                duration_api_ms=1,
                is_error=True,
                num_turns=9,
                session_id="s",
            ),
            SystemMessage(subtype="init"),
            SystemMessage(subtype="status", data={"cwd": "/tmp"}),
            StreamEvent(uuid="e-1", session_id="s", event={"type": "message_stop"}),
        ]
        for msg in messages:
            assert parse_message(encode_message(msg)) == msg

    def test_constructed_system_message_data_holds_frame(self):
        """A SystemMessage built in code carries type and subtype in data."""
        msg = SystemMessage(subtype="status", data={"cwd": "/tmp", "subtype": "stale"})

        assert msg.data == {"cwd": "/tmp", "type": "system", "subtype": "status"}
        assert encode_message(msg) == msg.data

    def test_encoded_user_frame_nests_content(self):
        """Content is nested under message like the CLI writes it."""
        frame = encode_message(UserMessage(content="Hi"))
        assert frame["type"] == "user"
        assert frame["message"] == {"role": "user", "content": "Hi"}


# =============================================================================
# Tests: Hook Inputs
# =============================================================================

COMMON_HOOK_FIELDS = {
    "session_id": "sess_1",
    "transcript_path": "/tmp/transcript.jsonl",
    "cwd": "/work",
    "permission_mode": "default",
}


class TestHookInput:
    """Test decoding hook_callback inputs."""

    @pytest.mark.parametrize(
        ("fields", "expected_type", "checks"),
        [
            (
                {
                    "hook_event_name": "PreToolUse",
                    "tool_name": "Bash",
                    "tool_input": {"command": "ls"},
                    "tool_use_id": "toolu_1",
                },
                PreToolUseHookInput,
                {"tool_name": "Bash", "tool_input": {"command": "ls"}, "tool_use_id": "toolu_1"},
            ),
            (
                {
                    "hook_event_name": "PostToolUse",
                    "tool_name": "Read",
                    "tool_input": {"file_path": "a.txt"},
                    "tool_response": {"content": "hello"},
                },
                PostToolUseHookInput,
                {"tool_name": "Read", "tool_response": {"content": "hello"}},
            ),
            (
                {
                    "hook_event_name": "PostToolUseFailure",
                    "tool_name": "Bash",
                    "tool_input": {"command": "false"},
                    "tool_use_id": "toolu_2",
                    "error": "exit status 1",
                    "is_interrupt": False,
                },
                PostToolUseFailureHookInput,
                {"error": "exit status 1", "is_interrupt": False, "tool_use_id": "toolu_2"},
            ),
            (
                {"hook_event_name": "UserPromptSubmit", "prompt": "Fix the tests"},
                UserPromptSubmitHookInput,
                {"prompt": "Fix the tests"},
            ),
            (
                {"hook_event_name": "Stop", "stop_hook_active": True},
                StopHookInput,
                {"stop_hook_active": True},
            ),
            (
                {"hook_event_name": "SubagentStop", "stop_hook_active": False},
                SubagentStopHookInput,
                {"stop_hook_active": False},
            ),
            (
                {
                    "hook_event_name": "PreCompact",
                    "trigger": "manual",
                    "custom_instructions": "Keep the plan",
                },
                PreCompactHookInput,
                {"trigger": "manual", "custom_instructions": "Keep the plan"},
            ),
        ],
    )
    def test_each_event_decodes_to_its_type(self, fields, expected_type, checks):
        """The event name selects the input type and its fields are typed."""
        parsed = parse_hook_input({**COMMON_HOOK_FIELDS, **fields})

        assert type(parsed) is expected_type
        assert parsed.hook_event_name == fields["hook_event_name"]
        assert parsed.session_id == "sess_1"
        assert parsed.cwd == "/work"
        for name, value in checks.items():
            assert getattr(parsed, name) == value

    def test_unmodelled_fields_are_kept(self):
        """Fields from newer CLI versions stay reachable."""
        parsed = parse_hook_input({"hook_event_name": "Stop", "agent_id": "a-1"})

        assert parsed.model_extra == {"agent_id": "a-1"}

    @pytest.mark.parametrize(
        "data",
        [
            {"tool_name": "Bash"},
            {"hook_event_name": "SessionEnd"},
            {"hook_event_name": "PreToolUse"},
            {"hook_event_name": "PreCompact", "trigger": "sometimes"},
        ],
    )
    def test_invalid_input_raises_with_raw_data(self, data):
        """Unknown events and missing fields raise MessageParseError."""
        with pytest.raises(MessageParseError, match="Invalid hook input") as exc_info:
            parse_hook_input(data)
        assert exc_info.value.data == data
