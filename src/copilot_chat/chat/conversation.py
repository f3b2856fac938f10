"""Conversation logs and their pure transitions.

Two logs are kept side by side: the canonical ``messages`` sent to the model
and the ``display`` log rendered to the user. Every user display entry records
the canonical position of its message in ``index`` when it is created; that
link is the only thing used to rewind the canonical log on retry/restart.

All functions here are pure: they take a :class:`ConversationState` and return
a new one.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any, Literal, Mapping, Sequence

from ..ai.errors import ConversationIntegrityError, ErrorCode, ValidationError
from ..ai.types import Message

__all__ = [
    "DisplayRole",
    "DisplayMessage",
    "ConversationState",
    "begin_turn",
    "append_display",
    "fold_reply",
    "set_tool_status",
    "flag_last_user_error",
    "clear_error",
    "truncate_for_restart",
]

DisplayRole = Literal["user", "assistant", "tool"]


@dataclass(slots=True, frozen=True)
class DisplayMessage:
    """A row of the UI-facing chat log.

    Attributes:
        role: Who produced the row.
        content: Text shown to the user.
        error: Set on user turns whose request failed.
        context_elements: Context attached to the turn, if any.
        snapshot: Opaque state captured when the turn was sent (e.g. a flow).
        index: For user turns, canonical-log position of the matching message.
        tool_call_id: For tool rows, the call whose status is shown.
    """

    role: DisplayRole
    content: str
    error: bool = False
    context_elements: tuple[Any, ...] | None = None
    snapshot: Any = None
    index: int | None = None
    tool_call_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Serialize the row for persistence."""
        payload: dict[str, Any] = {"role": self.role, "content": self.content}
        if self.error:
            payload["error"] = True
        if self.context_elements is not None:
            payload["context_elements"] = list(self.context_elements)
        if self.snapshot is not None:
            payload["snapshot"] = self.snapshot
        if self.index is not None:
            payload["index"] = self.index
        if self.tool_call_id is not None:
            payload["tool_call_id"] = self.tool_call_id
        return payload

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> DisplayMessage:
        context = payload.get("context_elements")
        return cls(
            role=payload.get("role", "assistant"),
            content=str(payload.get("content", "")),
            error=bool(payload.get("error", False)),
            context_elements=tuple(context) if context is not None else None,
            snapshot=payload.get("snapshot"),
            index=payload.get("index"),
            tool_call_id=payload.get("tool_call_id"),
        )


@dataclass(slots=True, frozen=True)
class ConversationState:
    """Both logs of a chat session."""

    display: tuple[DisplayMessage, ...] = field(default_factory=tuple)
    messages: tuple[Message, ...] = field(default_factory=tuple)


def begin_turn(
    state: ConversationState,
    instructions: str,
    user_message: Message,
    *,
    context_elements: Sequence[Any] | None = None,
    snapshot: Any = None,
) -> ConversationState:
    """Append a user turn to both logs, linking them through ``index``."""
    entry = DisplayMessage(
        role="user",
        content=instructions,
        context_elements=tuple(context_elements) if context_elements is not None else None,
        snapshot=snapshot,
        index=len(state.messages),
    )
    return ConversationState(
        display=(*state.display, entry),
        messages=(*state.messages, user_message),
    )


def append_display(state: ConversationState, entry: DisplayMessage) -> ConversationState:
    return replace(state, display=(*state.display, entry))


def fold_reply(state: ConversationState, added: Sequence[Message]) -> ConversationState:
    """Append the messages produced by the dispatch loop to the canonical log."""
    if not added:
        return state
    return replace(state, messages=(*state.messages, *added))


def set_tool_status(state: ConversationState, call_id: str, text: str) -> ConversationState:
    """Create or update the tool row showing progress for ``call_id``."""
    display = list(state.display)
    for position, entry in enumerate(display):
        if entry.role == "tool" and entry.tool_call_id == call_id:
            display[position] = replace(entry, content=text)
            return replace(state, display=tuple(display))
    display.append(DisplayMessage(role="tool", content=text, tool_call_id=call_id))
    return replace(state, display=tuple(display))


def flag_last_user_error(state: ConversationState) -> ConversationState:
    """Mark the most recent user turn as failed."""
    for position in range(len(state.display) - 1, -1, -1):
        entry = state.display[position]
        if entry.role == "user":
            display = list(state.display)
            display[position] = replace(entry, error=True)
            return replace(state, display=tuple(display))
    return state


def clear_error(state: ConversationState, display_index: int) -> ConversationState:
    entry = _user_turn(state, display_index)
    if not entry.error:
        return state
    display = list(state.display)
    display[display_index] = replace(entry, error=False)
    return replace(state, display=tuple(display))


def truncate_for_restart(
    state: ConversationState,
    display_index: int,
) -> tuple[ConversationState, DisplayMessage]:
    """Rewind both logs to just before the user turn at ``display_index``.

    Returns:
        The truncated state and the removed user turn.

    Raises:
        ValidationError: The row at ``display_index`` is not a user turn.
        ConversationIntegrityError: The turn's canonical link is broken.
    """
    entry = _user_turn(state, display_index)
    index = entry.index
    if index is None or not 0 <= index < len(state.messages):
        raise ConversationIntegrityError(
            f"Display turn {display_index} points to canonical position {index}, "
            f"but the log only has {len(state.messages)} message(s)",
        )
    if state.messages[index].role != "user":
        raise ConversationIntegrityError(
            f"Canonical message {index} is a {state.messages[index].role} message, expected user",
        )
    truncated = ConversationState(
        display=state.display[:display_index],
        messages=state.messages[:index],
    )
    return truncated, entry


def _user_turn(state: ConversationState, display_index: int) -> DisplayMessage:
    if not 0 <= display_index < len(state.display) or state.display[display_index].role != "user":
        raise ValidationError(
            "No user message found at the specified index",
            error_code=ErrorCode.INVALID_TURN,
            display_index=display_index,
        )
    return state.display[display_index]
