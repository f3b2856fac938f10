"""Reassembly of streamed completion chunks into text and tool calls.

A single model turn may interleave prose and tool calls. Text deltas are
echoed to the caller as they arrive; when the first tool-call delta shows up
after some prose, that prose is flushed as a finished segment so it is shown
before the tools run. Tool-call arguments arrive as fragments of a JSON blob
keyed by a stream-local index and are only concatenated here, never parsed.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterable, AsyncIterator, Mapping, Protocol, Sequence

from .cancellation import CancellationToken
from .tools.base import Tool, ToolCallbacks
from .types import CompletionChunk, ToolCallDelta, ToolCallRequest

__all__ = [
    "StreamCallbacks",
    "PendingToolCall",
    "AssembledTurn",
    "ChunkAssembler",
]

LOGGER = logging.getLogger(__name__)


class StreamCallbacks(ToolCallbacks, Protocol):
    """Display hooks driven while a turn streams."""

    def on_token(self, token: str) -> None:
        """Echo a text delta as soon as it arrives."""
        ...

    def on_message_end(self) -> None:
        """Mark the text streamed so far as a finished segment."""
        ...


@dataclass(slots=True)
class PendingToolCall:
    """Tool call being accumulated from deltas."""

    index: int
    id: str | None = None
    name: str | None = None
    arguments: str = ""
    announced: bool = False

    @property
    def identified(self) -> bool:
        return bool(self.id and self.name)

    @property
    def complete(self) -> bool:
        # Calls without parameters may stream empty arguments; they become "{}".
        return self.identified

    def to_request(self) -> ToolCallRequest:
        return ToolCallRequest(id=self.id or "", name=self.name or "", arguments=self.arguments or "{}")


@dataclass(slots=True)
class AssembledTurn:
    """Result of consuming one model turn.

    Attributes:
        segments: Text segments in the order they were flushed.
        tool_calls: Finalized tool calls ordered by stream index.
        cancelled: Whether consumption stopped because the token was cancelled.
    """

    segments: list[str] = field(default_factory=list)
    tool_calls: tuple[ToolCallRequest, ...] = ()
    cancelled: bool = False

    @property
    def answer(self) -> str:
        """All prose produced during the turn."""
        return "".join(self.segments)


class ChunkAssembler:
    """Consumes a completion stream for exactly one model turn.

    Args:
        tools: Tools active for this turn, used to resolve ``pre_action`` hooks.
        callbacks: Display hooks; also handed to ``pre_action``.
        token: Optional cancellation token checked after every chunk.
    """

    def __init__(
        self,
        tools: Sequence[Tool],
        callbacks: StreamCallbacks,
        *,
        token: CancellationToken | None = None,
    ) -> None:
        self._tools: Mapping[str, Tool] = {tool.name: tool for tool in tools}
        self._callbacks = callbacks
        self._token = token
        self._buffer = ""
        self._pending: dict[int, PendingToolCall] = {}
        self._result = AssembledTurn()

    async def consume(self, stream: AsyncIterable[CompletionChunk]) -> AssembledTurn:
        """Drain ``stream`` and return the assembled turn.

        Every read is raced against the cancellation token, so a stalled
        stream does not delay a cancel. The stream is always closed on exit.
        """
        iterator = stream.__aiter__()
        try:
            while not self._is_cancelled():
                chunk = await self._next_chunk(iterator)
                if chunk is _END:
                    break
                if chunk is not None:
                    self.feed(chunk)
        finally:
            await _aclose(iterator)
        if self._is_cancelled():
            LOGGER.debug("Stream consumption stopped: request cancelled")
            self._result.cancelled = True
        return self.finish()

    async def _next_chunk(self, iterator: AsyncIterator[CompletionChunk]) -> Any:
        """Return the next chunk, ``_END`` when exhausted, ``None`` when cancelled first."""
        if self._token is None:
            return await _read(iterator)
        read = asyncio.ensure_future(_read(iterator))
        cancelled = asyncio.ensure_future(self._token.wait())
        try:
            await asyncio.wait({read, cancelled}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            cancelled.cancel()
            if not read.done():
                read.cancel()
                await asyncio.gather(read, return_exceptions=True)
        if read.cancelled():
            return None
        return read.result()

    def feed(self, chunk: CompletionChunk) -> None:
        """Fold a single chunk into the turn state."""
        if chunk.text_delta:
            self._buffer += chunk.text_delta
            self._callbacks.on_token(chunk.text_delta)

        if not chunk.tool_call_deltas:
            return
        if self._buffer:
            self._flush()
        for delta in chunk.tool_call_deltas:
            pending = self._accumulate(delta)
            if pending.identified and not pending.announced:
                pending.announced = True
                self._run_pre_action(pending)

    def finish(self) -> AssembledTurn:
        """Flush trailing text and finalize complete tool calls."""
        if self._buffer:
            self._flush()
        else:
            self._callbacks.on_message_end()
        finalized = []
        for index in sorted(self._pending):
            pending = self._pending[index]
            if pending.complete:
                finalized.append(pending.to_request())
            else:
                LOGGER.debug("Dropping incomplete tool call at stream index %d", index)
        self._result.tool_calls = tuple(finalized)
        return self._result

    def _accumulate(self, delta: ToolCallDelta) -> PendingToolCall:
        pending = self._pending.get(delta.index)
        if pending is None:
            pending = PendingToolCall(index=delta.index)
            self._pending[delta.index] = pending
        if delta.id and not pending.id:
            pending.id = delta.id
        if delta.name and not pending.name:
            pending.name = delta.name
        if delta.arguments_fragment:
            pending.arguments += delta.arguments_fragment
        return pending

    def _flush(self) -> None:
        self._result.segments.append(self._buffer)
        self._buffer = ""
        self._callbacks.on_message_end()

    def _run_pre_action(self, pending: PendingToolCall) -> None:
        tool = self._tools.get(pending.name or "")
        if tool is None:
            return
        tool.pre_action(pending.id or "", self._callbacks)

    def _is_cancelled(self) -> bool:
        return self._token is not None and self._token.cancelled


_END = object()


async def _read(iterator: AsyncIterator[CompletionChunk]) -> Any:
    try:
        return await iterator.__anext__()
    except StopAsyncIteration:
        return _END


async def _aclose(iterator: AsyncIterator[CompletionChunk]) -> None:
    aclose = getattr(iterator, "aclose", None)
    if aclose is not None:
        await aclose()
