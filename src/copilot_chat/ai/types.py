"""Core message and chunk types for the conversation runtime.

The canonical :class:`Message` is what gets submitted to the model. Streaming
responses arrive as :class:`CompletionChunk` instances, which the chunk
assembler folds back into text segments and :class:`ToolCallRequest` objects.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Literal, Mapping, Sequence

__all__ = [
    "MessageRole",
    "ToolCallRequest",
    "Message",
    "ToolCallDelta",
    "CompletionChunk",
    "serialize_tool_calls",
]


MessageRole = Literal["system", "user", "assistant", "tool"]


# -----------------------------------------------------------------------------
# Tool Calls
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class ToolCallRequest:
    """A single tool invocation requested by the assistant.

    Attributes:
        id: Identifier the tool response must echo back.
        name: Name of the tool to invoke.
        arguments: Raw serialized JSON blob, not parsed until execution.
    """

    id: str
    name: str
    arguments: str = "{}"

    def to_chat_param(self) -> dict[str, Any]:
        """Convert to the OpenAI ``tool_calls`` entry shape."""
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": self.arguments},
        }

    @classmethod
    def from_chat_param(cls, param: Mapping[str, Any]) -> ToolCallRequest:
        function = param.get("function") or {}
        return cls(
            id=str(param.get("id", "")),
            name=str(function.get("name", "")),
            arguments=str(function.get("arguments") or "{}"),
        )


def serialize_tool_calls(tool_calls: Sequence[ToolCallRequest]) -> str:
    """Serialize tool calls exactly as they are sent to the model."""
    return json.dumps([call.to_chat_param() for call in tool_calls])


# -----------------------------------------------------------------------------
# Message Type
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class Message:
    """Immutable canonical chat message.

    Attributes:
        role: The role of the message sender.
        content: Text content; may be empty for assistant tool-call turns.
        tool_call_id: For tool messages, the request id being answered.
        tool_calls: For assistant messages, the ordered tool-call requests.
    """

    role: MessageRole
    content: str = ""
    tool_call_id: str | None = None
    tool_calls: tuple[ToolCallRequest, ...] = ()

    @property
    def has_tool_calls(self) -> bool:
        return self.role == "assistant" and bool(self.tool_calls)

    def to_chat_param(self) -> dict[str, Any]:
        """Convert to OpenAI's ChatCompletionMessageParam format."""
        payload: dict[str, Any] = {"role": self.role}
        if self.content or not self.has_tool_calls:
            payload["content"] = self.content
        if self.tool_call_id is not None:
            payload["tool_call_id"] = self.tool_call_id
        if self.has_tool_calls:
            payload["tool_calls"] = [call.to_chat_param() for call in self.tool_calls]
        return payload

    @classmethod
    def from_chat_param(cls, param: Mapping[str, Any]) -> Message:
        """Create a Message from OpenAI's ChatCompletionMessageParam format."""
        raw_calls = param.get("tool_calls") or ()
        return cls(
            role=param.get("role", "user"),  # type: ignore[arg-type]
            content=str(param.get("content") or ""),
            tool_call_id=param.get("tool_call_id"),
            tool_calls=tuple(ToolCallRequest.from_chat_param(call) for call in raw_calls),
        )

    @classmethod
    def system(cls, content: str) -> Message:
        return cls(role="system", content=content)

    @classmethod
    def user(cls, content: str) -> Message:
        return cls(role="user", content=content)

    @classmethod
    def assistant(
        cls,
        content: str = "",
        tool_calls: Sequence[ToolCallRequest] | None = None,
    ) -> Message:
        return cls(role="assistant", content=content, tool_calls=tuple(tool_calls or ()))

    @classmethod
    def tool(cls, content: str, tool_call_id: str) -> Message:
        return cls(role="tool", content=content, tool_call_id=tool_call_id)


# -----------------------------------------------------------------------------
# Streaming Chunks
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class ToolCallDelta:
    """Partial tool call carried by a streamed chunk.

    Attributes:
        index: Stream-local index grouping deltas of the same call.
        id: Call id, usually only present on the first delta.
        name: Function name, usually only present on the first delta.
        arguments_fragment: Next fragment of the JSON arguments blob.
    """

    index: int
    id: str | None = None
    name: str | None = None
    arguments_fragment: str | None = None


@dataclass(slots=True, frozen=True)
class CompletionChunk:
    """Normalized streaming delta from the completion service."""

    text_delta: str | None = None
    tool_call_deltas: tuple[ToolCallDelta, ...] = field(default_factory=tuple)
