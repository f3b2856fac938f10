"""Tests for tool descriptors and message types."""

from __future__ import annotations

import pytest

from copilot_chat.ai.errors import ErrorCode, ToolExecutionError, ValidationError
from copilot_chat.ai.tools import FunctionTool, ToolDefinition, parse_arguments
from copilot_chat.ai.types import Message, ToolCallRequest
from tests.helpers import RecordingCallbacks


class TestFunctionTool:
    @pytest.mark.asyncio
    async def test_async_function_receives_parsed_arguments(self):
        async def greet(args, call_id, callbacks):
            callbacks.set_status(call_id, "Greeting...")
            return f"Hello {args['name']}"

        callbacks = RecordingCallbacks()
        tool = FunctionTool(ToolDefinition("greet"), greet)

        assert await tool.execute('{"name": "Ada"}', "g1", callbacks) == "Hello Ada"
        assert callbacks.statuses == [("g1", "Greeting...")]

    @pytest.mark.asyncio
    async def test_non_string_results_are_serialized(self):
        tool = FunctionTool(ToolDefinition("count"), lambda args, call_id, callbacks: {"count": 2})
        assert await tool.execute("", "c1", RecordingCallbacks()) == '{"count": 2}'

    def test_definition_is_openai_tool(self):
        definition = ToolDefinition(
            "search_docs",
            "Search the documentation",
            {"type": "object", "properties": {"query": {"type": "string"}}, "required": ["query"]},
        )
        assert definition.to_openai() == {
            "type": "function",
            "function": {
                "name": "search_docs",
                "description": "Search the documentation",
                "parameters": {"type": "object", "properties": {"query": {"type": "string"}}, "required": ["query"]},
            },
        }


class TestParseArguments:
    def test_blank_arguments_are_empty_object(self):
        assert parse_arguments("  ") == {}

    @pytest.mark.parametrize("raw", ["{broken", "[1, 2]"])
    def test_invalid_arguments(self, raw):
        with pytest.raises(ToolExecutionError) as excinfo:
            parse_arguments(raw, tool_name="t", call_id="c")
        assert excinfo.value.error_code == ErrorCode.INVALID_ARGUMENTS
        assert excinfo.value.to_dict()["details"] == {"tool_name": "t", "call_id": "c"}


class TestMessage:
    def test_tool_call_message_chat_param(self):
        message = Message.assistant(tool_calls=[ToolCallRequest("a", "f", '{"x":1}')])
        assert message.to_chat_param() == {
            "role": "assistant",
            "tool_calls": [{"id": "a", "type": "function", "function": {"name": "f", "arguments": '{"x":1}'}}],
        }
        assert Message.from_chat_param(message.to_chat_param()) == message

    def test_tool_response_chat_param(self):
        assert Message.tool("42", "a").to_chat_param() == {"role": "tool", "content": "42", "tool_call_id": "a"}

    def test_missing_arguments_default_to_empty_object(self):
        call = ToolCallRequest.from_chat_param({"id": "a", "function": {"name": "f", "arguments": None}})
        assert call.arguments == "{}"


def test_runtime_error_serialization():
    error = ValidationError("Instructions are required")
    assert error.to_dict() == {"error": ErrorCode.EMPTY_INSTRUCTIONS, "message": "Instructions are required"}
    assert str(error) == "Instructions are required"
