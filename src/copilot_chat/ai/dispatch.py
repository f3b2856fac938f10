"""Tool dispatch loop: drives one user request until the model answers.

Each iteration submits the conversation, assembles the streamed reply and, if
the model asked for tools, runs them one after the other before submitting
again. The system prompt, the tool set and the mode helpers are re-read from
the mode state machine on every iteration, so a ``change_mode`` call made by
the model is honoured by the very next submission.
"""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from typing import Any, Mapping, Protocol, Sequence, runtime_checkable

from .cancellation import CancellationToken
from .chunk_assembler import ChunkAssembler
from .errors import ChatRuntimeError, ErrorCode, OperationCancelled, ToolExecutionError, TransportError
from .modes import ModeStateMachine
from .tools.base import Tool, ToolDefinition, resolve
from .types import CompletionChunk, Message, ToolCallRequest

__all__ = [
    "CompletionService",
    "TurnCallbacks",
    "NullCallbacks",
    "ToolDispatchLoop",
    "DEFAULT_MAX_ITERATIONS",
    "consistent_prefix",
]

LOGGER = logging.getLogger(__name__)

DEFAULT_MAX_ITERATIONS = 20


# -----------------------------------------------------------------------------
# Protocols
# -----------------------------------------------------------------------------


@runtime_checkable
class CompletionService(Protocol):
    """Submits a conversation and yields the streamed reply.

    The returned iterator is single-pass and not restartable. It must stop
    promptly once ``token`` is cancelled.
    """

    def submit(
        self,
        messages: Sequence[Message],
        token: CancellationToken | None,
        tools: Sequence[ToolDefinition],
    ) -> AsyncIterator[CompletionChunk]:
        ...


class TurnCallbacks(Protocol):
    """Display hooks the caller supplies for a request."""

    def on_token(self, token: str) -> None:
        ...

    def on_message_end(self) -> None:
        ...

    def set_status(self, call_id: str, text: str) -> None:
        ...


class NullCallbacks:
    """Callbacks that discard everything."""

    def on_token(self, token: str) -> None:
        pass

    def on_message_end(self) -> None:
        pass

    def set_status(self, call_id: str, text: str) -> None:
        pass


class _LoopCallbacks:
    """Caller callbacks plus the per-iteration token and mode helpers."""

    __slots__ = ("_inner", "token", "helpers")

    def __init__(self, inner: TurnCallbacks, token: CancellationToken | None, helpers: Mapping[str, Any]) -> None:
        self._inner = inner
        self.token = token
        self.helpers = helpers

    def on_token(self, token: str) -> None:
        self._inner.on_token(token)

    def on_message_end(self) -> None:
        self._inner.on_message_end()

    def set_status(self, call_id: str, text: str) -> None:
        self._inner.set_status(call_id, text)


# -----------------------------------------------------------------------------
# Loop
# -----------------------------------------------------------------------------


class ToolDispatchLoop:
    """Runs the submit → assemble → execute tools cycle.

    Args:
        completion_service: Transport producing chunk streams.
        modes: Source of the system prompt, tools and helpers.
        max_iterations: Safety cap on model submissions per request.
    """

    def __init__(
        self,
        completion_service: CompletionService,
        modes: ModeStateMachine,
        *,
        max_iterations: int = DEFAULT_MAX_ITERATIONS,
    ) -> None:
        self._service = completion_service
        self._modes = modes
        self._max_iterations = max(1, max_iterations)

    @property
    def modes(self) -> ModeStateMachine:
        return self._modes

    async def run(
        self,
        messages: Sequence[Message],
        token: CancellationToken | None = None,
        callbacks: TurnCallbacks | None = None,
        *,
        system_prompt: str | None = None,
        tools: Sequence[Tool] | None = None,
    ) -> list[Message]:
        """Drive turns until the model produces a plain answer.

        Args:
            messages: Conversation to submit; never mutated.
            token: Cancellation token for this request.
            callbacks: Display hooks.
            system_prompt: Overrides the mode's system prompt for this run. An
                overridden run leaves the pending instruction queued.
            tools: Overrides the mode's tool set for this run.

        Returns:
            Every message appended during the run. On cancellation, the
            longest prefix that keeps tool calls paired with their responses.

        Raises:
            TransportError: Submission or streaming failed.
            ToolExecutionError: A tool failed.
        """
        callbacks = callbacks or NullCallbacks()
        working = list(messages)
        added: list[Message] = []
        try:
            await self._drive(working, added, token, callbacks, system_prompt, tools)
        except OperationCancelled:
            LOGGER.debug("Dispatch loop cancelled after %d appended message(s)", len(added))
            return consistent_prefix(added)
        except Exception:
            callbacks.on_message_end()
            if token is not None and token.cancelled:
                LOGGER.debug("Suppressing error raised after cancellation", exc_info=True)
                return consistent_prefix(added)
            raise
        return added

    async def _drive(
        self,
        working: list[Message],
        added: list[Message],
        token: CancellationToken | None,
        callbacks: TurnCallbacks,
        system_prompt: str | None,
        tools_override: Sequence[Tool] | None,
    ) -> None:
        for iteration in range(1, self._max_iterations + 1):
            system = Message.system(system_prompt) if system_prompt is not None else self._modes.system_message
            tools = list(tools_override) if tools_override is not None else self._modes.tools
            loop_callbacks = _LoopCallbacks(callbacks, token, self._modes.helpers)

            request = [system, *working]
            pending = self._modes.take_pending_instruction() if system_prompt is None else ""
            if pending:
                request.append(self._modes.prepare_user_message(pending))

            LOGGER.debug(
                "Dispatch iteration %d: %d message(s), %d tool(s), mode=%s",
                iteration,
                len(request),
                len(tools),
                self._modes.mode.value,
            )
            assembler = ChunkAssembler(tools, loop_callbacks, token=token)
            try:
                stream = self._service.submit(request, token, [tool.definition for tool in tools])
                assembled = await assembler.consume(stream)
            except ChatRuntimeError:
                raise
            except Exception as exc:
                raise TransportError(f"Completion request failed: {exc}") from exc

            if assembled.cancelled or (token is not None and token.cancelled):
                raise OperationCancelled("Request was cancelled while streaming")

            if assembled.answer:
                reply = Message.assistant(assembled.answer)
                working.append(reply)
                added.append(reply)

            if not assembled.tool_calls:
                return

            calls = tuple(
                call if call.arguments else ToolCallRequest(call.id, call.name, "{}")
                for call in assembled.tool_calls
            )
            request_message = Message.assistant(tool_calls=calls)
            working.append(request_message)
            added.append(request_message)
            for call in calls:
                if token is not None:
                    token.raise_if_cancelled()
                content = await self._execute(call, tools, loop_callbacks)
                response = Message.tool(content, call.id)
                working.append(response)
                added.append(response)

        LOGGER.warning("Dispatch loop reached max iterations (%d)", self._max_iterations)

    async def _execute(self, call: ToolCallRequest, tools: Sequence[Tool], callbacks: _LoopCallbacks) -> str:
        tool = next((candidate for candidate in tools if candidate.name == call.name), None)
        if tool is None:
            raise ToolExecutionError(
                f"Unknown tool {call.name!r}",
                tool_name=call.name,
                call_id=call.id,
                error_code=ErrorCode.UNKNOWN_TOOL,
            )
        LOGGER.debug("Executing tool %s (call %s)", call.name, call.id)
        try:
            result = await resolve(tool.execute(call.arguments, call.id, callbacks))
        except ChatRuntimeError:
            raise
        except Exception as exc:
            raise ToolExecutionError(
                f"Tool {call.name!r} failed: {exc}",
                tool_name=call.name,
                call_id=call.id,
            ) from exc
        if isinstance(result, str):
            return result
        return json.dumps(result, ensure_ascii=False, default=str)


def consistent_prefix(messages: Sequence[Message]) -> list[Message]:
    """Return the longest prefix in which every tool-call request is answered."""
    result: list[Message] = []
    index = 0
    while index < len(messages):
        message = messages[index]
        if not message.has_tool_calls:
            result.append(message)
            index += 1
            continue
        expected = [call.id for call in message.tool_calls]
        responses = messages[index + 1 : index + 1 + len(expected)]
        if [item.tool_call_id for item in responses if item.role == "tool"] != expected:
            break
        result.append(message)
        result.extend(responses)
        index += 1 + len(expected)
    return result
