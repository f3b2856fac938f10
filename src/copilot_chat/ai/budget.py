"""Context-window budget estimation and pair-safe history trimming.

Token usage is approximated at four characters per token, which keeps the
estimate deterministic and free of tokenizer dependencies. Trimming always
evicts whole units: an assistant message carrying tool calls leaves together
with the tool responses that answer it.
"""

from __future__ import annotations

import logging
from typing import Iterable, Sequence

from .types import Message, serialize_tool_calls

__all__ = [
    "CHARS_PER_TOKEN",
    "THRESHOLD_PERCENTAGE",
    "THRESHOLD_HARD_LIMIT",
    "DEFAULT_TRIM_DEPTH",
    "estimate_message_tokens",
    "estimate_tokens",
    "token_threshold",
    "is_over_limit",
    "trim_history",
]

LOGGER = logging.getLogger(__name__)

CHARS_PER_TOKEN = 4
# Reserve max(5% of the window, 5000 tokens) for the model's reply.
THRESHOLD_PERCENTAGE = 0.05
THRESHOLD_HARD_LIMIT = 5000
DEFAULT_TRIM_DEPTH = 10


# -----------------------------------------------------------------------------
# Estimation
# -----------------------------------------------------------------------------


def estimate_message_tokens(message: Message) -> float:
    """Approximate the token cost of a single message."""
    tokens = len(message.content) / CHARS_PER_TOKEN if message.content else 0.0
    if message.has_tool_calls:
        tokens += len(serialize_tool_calls(message.tool_calls)) / CHARS_PER_TOKEN
    return tokens


def estimate_tokens(messages: Iterable[Message]) -> float:
    """Approximate the token cost of a conversation."""
    return sum(estimate_message_tokens(message) for message in messages)


def token_threshold(context_window: int) -> float:
    """Return the usable token count for a model with ``context_window`` tokens."""
    return context_window - max(context_window * THRESHOLD_PERCENTAGE, THRESHOLD_HARD_LIMIT)


def is_over_limit(messages: Iterable[Message], context_window: int) -> bool:
    """Check whether ``messages`` exceed the safety threshold of the window."""
    return estimate_tokens(messages) > token_threshold(context_window)


# -----------------------------------------------------------------------------
# Trimming
# -----------------------------------------------------------------------------


def trim_history(
    messages: Sequence[Message],
    context_window: int,
    *,
    max_depth: int = DEFAULT_TRIM_DEPTH,
) -> list[Message]:
    """Evict the oldest messages until the conversation fits the budget.

    Each eviction step removes the oldest message. When that message is an
    assistant turn with tool calls, every tool response answering one of its
    requests is removed with it, and a tool message can never be left at the
    head of the list. The sole remaining message is never evicted, even when
    the conversation is still over budget after ``max_depth`` steps.

    Args:
        messages: Canonical messages; the sequence itself is never mutated.
        context_window: Size of the model context window in tokens.
        max_depth: Maximum number of eviction steps.

    Returns:
        A new list. Equal to ``messages`` when already under budget.
    """
    trimmed = list(messages)
    if not is_over_limit(trimmed, context_window):
        return trimmed

    original_count = len(trimmed)
    depth = max_depth
    over_limit = True
    while over_limit and depth > 0 and len(trimmed) > 1:
        unit = _oldest_unit_size(trimmed)
        if unit >= len(trimmed):
            break
        del trimmed[:unit]
        over_limit = is_over_limit(trimmed, context_window)
        depth -= 1

    if over_limit:
        LOGGER.warning(
            "Conversation still over budget after trimming (%d message(s) left, window=%d)",
            len(trimmed),
            context_window,
        )
    LOGGER.debug("Trimmed %d message(s) from history", original_count - len(trimmed))
    return trimmed


def _oldest_unit_size(messages: Sequence[Message]) -> int:
    """Number of leading messages that must be evicted together."""
    head = messages[0]
    size = 1
    if head.has_tool_calls:
        answered = {call.id for call in head.tool_calls}
        while size < len(messages) and messages[size].role == "tool" and messages[size].tool_call_id in answered:
            size += 1
    # A tool response may never open the conversation.
    while size < len(messages) and messages[size].role == "tool":
        size += 1
    return size
