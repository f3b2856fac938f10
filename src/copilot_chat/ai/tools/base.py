"""Base classes for tools the model can invoke.

A tool is a capability descriptor: a :class:`ToolDefinition` sent to the model
plus an ``execute`` coroutine (or plain function) that returns the string fed
back as the tool response. Tools may also expose a ``pre_action`` hook, run as
soon as a streamed call is identified, before its arguments are complete.
"""

from __future__ import annotations

import inspect
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Mapping, Protocol, Union

from ..cancellation import CancellationToken
from ..errors import ErrorCode, ToolExecutionError

__all__ = [
    "ToolDefinition",
    "ToolCallbacks",
    "Tool",
    "FunctionTool",
    "ToolFunction",
    "PreAction",
    "parse_arguments",
    "resolve",
]

LOGGER = logging.getLogger(__name__)


class ToolCallbacks(Protocol):
    """Callbacks exposed to tools while they run.

    ``token`` is the cancellation token of the request that triggered the call;
    long-running tools should check it between steps. ``helpers`` are the
    helpers of the mode that was active when the call was dispatched.
    """

    token: CancellationToken | None
    helpers: Mapping[str, Any]

    def set_status(self, call_id: str, text: str) -> None:
        """Show transient progress text for ``call_id``."""
        ...


@dataclass(slots=True, frozen=True)
class ToolDefinition:
    """Schema advertised to the model for a single tool.

    Attributes:
        name: Function name the model calls.
        description: Natural-language description for the model.
        parameters: JSON Schema object describing the arguments.
    """

    name: str
    description: str = ""
    parameters: Mapping[str, Any] = field(
        default_factory=lambda: {"type": "object", "properties": {}}
    )

    def to_openai(self) -> dict[str, Any]:
        """Return the chat-completions ``tools`` entry."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": dict(self.parameters),
            },
        }


class Tool(ABC):
    """Abstract base for tools."""

    definition: ToolDefinition

    @property
    def name(self) -> str:
        return self.definition.name

    @abstractmethod
    def execute(self, arguments: str, call_id: str, callbacks: ToolCallbacks) -> str | Awaitable[str]:
        """Run the tool with the raw JSON ``arguments`` blob."""

    def pre_action(self, call_id: str, callbacks: ToolCallbacks) -> None:
        """Hook run once when the call is first identified in the stream."""
        return None


ToolFunction = Callable[[Mapping[str, Any], str, ToolCallbacks], Union[str, Awaitable[str]]]
PreAction = Callable[[str, ToolCallbacks], None]


class FunctionTool(Tool):
    """Tool backed by a plain function receiving parsed arguments.

    Example:
        >>> async def greet(args, call_id, callbacks):
        ...     callbacks.set_status(call_id, "Greeting...")
        ...     return f"Hello {args['name']}"
        >>> tool = FunctionTool(ToolDefinition("greet"), greet)
    """

    def __init__(
        self,
        definition: ToolDefinition,
        fn: ToolFunction,
        *,
        pre_action: PreAction | None = None,
    ) -> None:
        self.definition = definition
        self._fn = fn
        self._pre_action = pre_action

    async def execute(self, arguments: str, call_id: str, callbacks: ToolCallbacks) -> str:
        parsed = parse_arguments(arguments, tool_name=self.name, call_id=call_id)
        result = await resolve(self._fn(parsed, call_id, callbacks))
        return result if isinstance(result, str) else json.dumps(result, ensure_ascii=False)

    def pre_action(self, call_id: str, callbacks: ToolCallbacks) -> None:
        if self._pre_action is not None:
            self._pre_action(call_id, callbacks)


def parse_arguments(arguments: str, *, tool_name: str | None = None, call_id: str | None = None) -> dict[str, Any]:
    """Parse a raw arguments blob into a mapping.

    Raises:
        ToolExecutionError: If the blob is not a JSON object.
    """
    text = (arguments or "").strip() or "{}"
    try:
        parsed = json.loads(text)
    except json.JSONDecodeError as exc:
        raise ToolExecutionError(
            f"Invalid JSON arguments for tool {tool_name!r}: {exc.msg}",
            tool_name=tool_name,
            call_id=call_id,
            error_code=ErrorCode.INVALID_ARGUMENTS,
        ) from exc
    if not isinstance(parsed, dict):
        raise ToolExecutionError(
            f"Arguments for tool {tool_name!r} must be a JSON object",
            tool_name=tool_name,
            call_id=call_id,
            error_code=ErrorCode.INVALID_ARGUMENTS,
        )
    return parsed


async def resolve(value: Any) -> Any:
    """Await ``value`` when it is awaitable; return it unchanged otherwise."""
    if inspect.isawaitable(value):
        return await value
    return value
