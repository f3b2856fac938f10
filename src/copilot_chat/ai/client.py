"""Completion transport built around OpenAI-compatible endpoints."""

from __future__ import annotations

import inspect
import json
import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, Mapping, Sequence

import httpx
from openai import (
    APIConnectionError,
    APIError,
    APITimeoutError,
    AsyncOpenAI,
)
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from .cancellation import CancellationToken
from .errors import TransportError
from .tools.base import ToolDefinition
from .types import CompletionChunk, Message, ToolCallDelta

__all__ = ["ClientSettings", "OpenAICompletionService", "normalize_chunk"]

LOGGER = logging.getLogger(__name__)

# Connection and timeout failures are retried, and only before any chunk was
# produced. HTTP status errors (rate limits included) surface immediately.
_RETRYABLE_ERRORS = (
    APIConnectionError,
    APITimeoutError,
    httpx.TimeoutException,
)


@dataclass(slots=True)
class ClientSettings:
    """Subset of settings required to configure the completion client."""

    base_url: str
    api_key: str
    model: str
    organization: str | None = None
    temperature: float | None = None
    request_timeout: float | None = 90.0
    max_retries: int = 3
    retry_min_seconds: float = 0.5
    retry_max_seconds: float = 6.0
    default_headers: Mapping[str, str] | None = None
    debug_logging: bool = False


class OpenAICompletionService:
    """Streams chat completions and normalizes them into :class:`CompletionChunk`."""

    def __init__(self, settings: ClientSettings, *, client: AsyncOpenAI | None = None) -> None:
        self._settings = settings
        self._client = client or self._build_client(settings)

    @property
    def settings(self) -> ClientSettings:
        return self._settings

    async def submit(
        self,
        messages: Sequence[Message],
        token: CancellationToken | None,
        tools: Sequence[ToolDefinition],
    ) -> AsyncIterator[CompletionChunk]:
        """Stream the model reply for ``messages``.

        Raises:
            TransportError: The request could not be opened or the stream broke.
        """
        payload = self._build_chat_payload(messages, tools)
        LOGGER.debug(
            "Starting streamed chat completion via %s with %s message(s) and %s tool(s)",
            self._settings.model,
            len(payload["messages"]),
            len(tools),
        )
        if self._settings.debug_logging:
            self._log_prompt_payload(payload)

        stream = await self._open_stream(payload)
        try:
            async for raw in stream:
                if token is not None and token.cancelled:
                    LOGGER.debug("Closing completion stream: request cancelled")
                    break
                chunk = normalize_chunk(raw)
                if chunk is not None:
                    yield chunk
        except (APIError, httpx.HTTPError) as exc:
            if token is not None and token.cancelled:
                return
            raise TransportError(f"Completion stream failed: {exc}") from exc
        finally:
            await _close_quietly(stream)

    async def _open_stream(self, payload: Mapping[str, Any]) -> Any:
        try:
            async for attempt in self._retrying():
                with attempt:
                    return await self._client.chat.completions.create(**payload)
        except (APIError, httpx.HTTPError) as exc:
            raise TransportError(f"Completion request failed: {exc}") from exc
        raise TransportError("Completion request was not attempted")  # pragma: no cover

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            reraise=True,
            stop=stop_after_attempt(max(1, self._settings.max_retries)),
            wait=wait_exponential(
                multiplier=self._settings.retry_min_seconds,
                max=self._settings.retry_max_seconds,
            ),
            retry=retry_if_exception_type(_RETRYABLE_ERRORS),
        )

    def _build_client(self, settings: ClientSettings) -> AsyncOpenAI:
        headers = dict(settings.default_headers) if settings.default_headers else None
        return AsyncOpenAI(
            api_key=settings.api_key,
            base_url=settings.base_url,
            organization=settings.organization,
            timeout=settings.request_timeout,
            default_headers=headers,
            max_retries=0,
        )

    def _build_chat_payload(
        self,
        messages: Sequence[Message],
        tools: Sequence[ToolDefinition],
    ) -> Dict[str, Any]:
        if not messages:
            raise ValueError("At least one message is required to start a chat")
        payload: Dict[str, Any] = {
            "model": self._settings.model,
            "messages": [message.to_chat_param() for message in messages],
            "stream": True,
        }
        if tools:
            payload["tools"] = [definition.to_openai() for definition in tools]
        if self._settings.temperature is not None:
            payload["temperature"] = self._settings.temperature
        return payload

    def _log_prompt_payload(self, payload: Mapping[str, Any]) -> None:
        try:
            serialized = json.dumps(payload, ensure_ascii=False, indent=2)
        except (TypeError, ValueError):
            LOGGER.debug("AI prompt payload (unserializable): %s", payload)
        else:
            LOGGER.debug("AI prompt payload:\n%s", serialized)

    async def aclose(self) -> None:
        """Close the underlying OpenAI client to release network resources."""

        close = getattr(self._client, "close", None)
        if close is None:
            return
        result = close()
        if inspect.isawaitable(result):
            await result


def normalize_chunk(raw: Any) -> CompletionChunk | None:
    """Convert a raw ``ChatCompletionChunk`` into a :class:`CompletionChunk`.

    Chunks without choices (usage reports, keep-alives) yield ``None``.
    """
    choices = getattr(raw, "choices", None)
    if not choices:
        return None
    delta = getattr(choices[0], "delta", None)
    if delta is None:
        return None
    deltas: list[ToolCallDelta] = []
    for tool_call in getattr(delta, "tool_calls", None) or ():
        function = getattr(tool_call, "function", None)
        deltas.append(
            ToolCallDelta(
                index=getattr(tool_call, "index", 0) or 0,
                id=getattr(tool_call, "id", None),
                name=getattr(function, "name", None) if function is not None else None,
                arguments_fragment=getattr(function, "arguments", None) if function is not None else None,
            )
        )
    text = getattr(delta, "content", None)
    if not text and not deltas:
        return None
    return CompletionChunk(text_delta=text or None, tool_call_deltas=tuple(deltas))


async def _close_quietly(stream: Any) -> None:
    close = getattr(stream, "close", None)
    if close is None:
        return
    try:
        result = close()
        if inspect.isawaitable(result):
            await result
    except Exception:  # pragma: no cover - closing must not mask the original outcome
        LOGGER.debug("Completion stream close failed", exc_info=True)
