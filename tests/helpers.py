"""Shared test helpers and stub classes.

This module contains reusable test stubs that are used across multiple test files.
Import from here instead of duplicating these classes in individual test files.
"""

from __future__ import annotations

import json
from collections.abc import AsyncIterator
from typing import Any, Callable, Mapping, Sequence, Union

from copilot_chat.ai.cancellation import CancellationToken
from copilot_chat.ai.tools.base import FunctionTool, ToolCallbacks, ToolDefinition
from copilot_chat.ai.types import CompletionChunk, Message, ToolCallDelta

# A scripted turn item is either a chunk to yield or a hook run in its place
# (e.g. to cancel the token mid-stream).
TurnItem = Union[CompletionChunk, Callable[[CancellationToken | None], None]]


def text_chunks(text: str, *, size: int = 4) -> list[CompletionChunk]:
    """Split ``text`` into text-only chunks of ``size`` characters."""
    return [CompletionChunk(text_delta=text[i : i + size]) for i in range(0, len(text), size)]


def tool_call_chunks(
    call_id: str,
    name: str,
    arguments: Mapping[str, Any] | str,
    *,
    index: int = 0,
    pieces: int = 2,
) -> list[CompletionChunk]:
    """Stream one tool call the way providers do: id/name first, then argument fragments."""
    blob = arguments if isinstance(arguments, str) else json.dumps(arguments)
    step = max(1, -(-len(blob) // pieces))
    chunks = [CompletionChunk(tool_call_deltas=(ToolCallDelta(index=index, id=call_id, name=name),))]
    for start in range(0, len(blob), step):
        chunks.append(
            CompletionChunk(
                tool_call_deltas=(ToolCallDelta(index=index, arguments_fragment=blob[start : start + step]),)
            )
        )
    return chunks


def cancel_token(token: CancellationToken | None) -> None:
    """Turn item that cancels the request mid-stream."""
    assert token is not None
    token.cancel("test")


class ScriptedCompletionService:
    """Completion service replaying one scripted turn per submission.

    A turn is a list of items (see ``TurnItem``) or an exception raised when
    the turn is submitted.
    """

    def __init__(self, turns: Sequence[Sequence[TurnItem] | BaseException] | None = None) -> None:
        self.turns = list(turns or [])
        self.calls: list[dict[str, Any]] = []
        self.closed = False

    def set_turns(self, turns: Sequence[Sequence[TurnItem] | BaseException]) -> None:
        self.turns = list(turns)

    @property
    def call_count(self) -> int:
        return len(self.calls)

    async def submit(
        self,
        messages: Sequence[Message],
        token: CancellationToken | None,
        tools: Sequence[ToolDefinition],
    ) -> AsyncIterator[CompletionChunk]:
        self.calls.append(
            {
                "messages": list(messages),
                "tools": [definition.name for definition in tools],
                "token": token,
            }
        )
        if not self.turns:
            raise AssertionError("Unexpected completion request")
        turn = self.turns.pop(0)
        if isinstance(turn, BaseException):
            raise turn
        for item in turn:
            if isinstance(item, CompletionChunk):
                yield item
            else:
                item(token)

    async def aclose(self) -> None:
        self.closed = True


class RecordingCallbacks:
    """Turn callbacks that record everything they receive."""

    def __init__(self) -> None:
        self.tokens: list[str] = []
        self.segments: list[str] = []
        self.message_ends = 0
        self.statuses: list[tuple[str, str]] = []
        self.token: CancellationToken | None = None
        self.helpers: Mapping[str, Any] = {}
        self._current = ""

    def on_token(self, token: str) -> None:
        self.tokens.append(token)
        self._current += token

    def on_message_end(self) -> None:
        self.message_ends += 1
        if self._current:
            self.segments.append(self._current)
        self._current = ""

    def set_status(self, call_id: str, text: str) -> None:
        self.statuses.append((call_id, text))


class RecordingNotifier:
    """Notifier stub collecting notifications."""

    def __init__(self) -> None:
        self.notifications: list[tuple[str, bool]] = []

    def notify(self, message: str, is_error: bool = False) -> None:
        self.notifications.append((message, is_error))

    @property
    def errors(self) -> list[str]:
        return [message for message, is_error in self.notifications if is_error]


def make_tool(
    name: str,
    result: Any = "ok",
    *,
    calls: list[dict[str, Any]] | None = None,
    pre_actions: list[str] | None = None,
    error: Exception | None = None,
) -> FunctionTool:
    """Create a function tool returning ``result`` and recording its calls."""

    def run(args: Mapping[str, Any], call_id: str, callbacks: ToolCallbacks) -> Any:
        if calls is not None:
            calls.append({"args": dict(args), "call_id": call_id, "helpers": dict(callbacks.helpers)})
        if error is not None:
            raise error
        return result(args) if callable(result) else result

    def pre_action(call_id: str, callbacks: ToolCallbacks) -> None:
        if pre_actions is not None:
            pre_actions.append(call_id)

    return FunctionTool(
        ToolDefinition(name=name, description=f"{name} tool", parameters={"type": "object", "properties": {}}),
        run,
        pre_action=pre_action,
    )


def assert_pairing(messages: Sequence[Message]) -> None:
    """Assert every assistant tool-call request is immediately answered."""
    index = 0
    while index < len(messages):
        message = messages[index]
        if message.role == "tool":
            raise AssertionError(f"Orphan tool message at {index}")
        if message.has_tool_calls:
            expected = [call.id for call in message.tool_calls]
            answered = [item.tool_call_id for item in messages[index + 1 : index + 1 + len(expected)]]
            assert answered == expected, f"Unpaired tool calls at {index}: {answered} != {expected}"
            index += 1 + len(expected)
            continue
        index += 1
