"""Chat history persistence."""

from __future__ import annotations

import json
import logging
import time
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Protocol, Sequence

from ..ai.types import Message
from .conversation import DisplayMessage

__all__ = [
    "SavedChat",
    "HistoryStore",
    "InMemoryHistoryStore",
    "JsonHistoryStore",
    "chat_title",
]

LOGGER = logging.getLogger(__name__)
_TITLE_LENGTH = 50
_HISTORY_VERSION = 1


@dataclass(slots=True)
class SavedChat:
    """A persisted conversation."""

    id: str
    title: str
    display: list[DisplayMessage] = field(default_factory=list)
    messages: list[Message] = field(default_factory=list)
    updated_at: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": _HISTORY_VERSION,
            "id": self.id,
            "title": self.title,
            "updated_at": self.updated_at,
            "display": [entry.to_dict() for entry in self.display],
            "messages": [message.to_chat_param() for message in self.messages],
        }

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> SavedChat:
        return cls(
            id=str(payload["id"]),
            title=str(payload.get("title", "")),
            display=[DisplayMessage.from_dict(entry) for entry in payload.get("display", [])],
            messages=[Message.from_chat_param(entry) for entry in payload.get("messages", [])],
            updated_at=float(payload.get("updated_at", 0.0)),
        )


def chat_title(display: Sequence[DisplayMessage]) -> str:
    """Derive a title from the first user turn."""
    for entry in display:
        if entry.role == "user" and entry.content.strip():
            text = " ".join(entry.content.split())
            return text if len(text) <= _TITLE_LENGTH else text[: _TITLE_LENGTH - 3] + "..."
    return "New chat"


class HistoryStore(Protocol):
    """Persistence collaborator used by the chat session."""

    def save_chat(self, display: Sequence[DisplayMessage], messages: Sequence[Message]) -> None:
        """Autosave the conversation currently in progress."""
        ...

    def save(self, display: Sequence[DisplayMessage], messages: Sequence[Message]) -> None:
        """Store the current conversation and start a new one."""
        ...

    def load_by_id(self, chat_id: str) -> SavedChat | None:
        ...

    def list_chats(self) -> List[SavedChat]:
        """Return saved chats, most recently updated first."""
        ...


class InMemoryHistoryStore:
    """History kept in process memory, mostly for tests and previews."""

    def __init__(self) -> None:
        self.chats: Dict[str, SavedChat] = {}
        self.current_id = uuid.uuid4().hex

    def save_chat(self, display: Sequence[DisplayMessage], messages: Sequence[Message]) -> None:
        if not display:
            return
        self.chats[self.current_id] = SavedChat(
            id=self.current_id,
            title=chat_title(display),
            display=list(display),
            messages=list(messages),
        )

    def save(self, display: Sequence[DisplayMessage], messages: Sequence[Message]) -> None:
        self.save_chat(display, messages)
        self.current_id = uuid.uuid4().hex

    def load_by_id(self, chat_id: str) -> SavedChat | None:
        chat = self.chats.get(chat_id)
        if chat is not None:
            self.current_id = chat.id
        return chat

    def list_chats(self) -> List[SavedChat]:
        return sorted(self.chats.values(), key=lambda chat: chat.updated_at, reverse=True)


class JsonHistoryStore:
    """History stored as one JSON file per chat, pruned to ``max_chats`` files."""

    def __init__(self, directory: Path | str, *, max_chats: int = 50) -> None:
        self._directory = Path(directory).expanduser()
        self._max_chats = max(1, max_chats)
        self.current_id = uuid.uuid4().hex

    @property
    def directory(self) -> Path:
        return self._directory

    def save_chat(self, display: Sequence[DisplayMessage], messages: Sequence[Message]) -> None:
        if not display:
            return
        chat = SavedChat(
            id=self.current_id,
            title=chat_title(display),
            display=list(display),
            messages=list(messages),
        )
        self._write(chat)
        self._prune()

    def save(self, display: Sequence[DisplayMessage], messages: Sequence[Message]) -> None:
        self.save_chat(display, messages)
        self.current_id = uuid.uuid4().hex

    def load_by_id(self, chat_id: str) -> SavedChat | None:
        path = self._path_for(chat_id)
        if not path.exists():
            return None
        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
            chat = SavedChat.from_dict(payload)
        except (OSError, json.JSONDecodeError, KeyError, TypeError, ValueError) as exc:
            LOGGER.warning("Chat history file %s could not be read: %s", path, exc)
            return None
        self.current_id = chat.id
        return chat

    def list_chats(self) -> List[SavedChat]:
        """Return saved chats, most recently updated first."""
        chats: List[SavedChat] = []
        if not self._directory.exists():
            return chats
        for path in self._directory.glob("*.json"):
            try:
                chats.append(SavedChat.from_dict(json.loads(path.read_text(encoding="utf-8"))))
            except (OSError, json.JSONDecodeError, KeyError, TypeError, ValueError):
                LOGGER.debug("Skipping unreadable history file %s", path)
        chats.sort(key=lambda chat: chat.updated_at, reverse=True)
        return chats

    def _write(self, chat: SavedChat) -> Path:
        self._directory.mkdir(parents=True, exist_ok=True)
        path = self._path_for(chat.id)
        body = json.dumps(chat.to_dict(), ensure_ascii=False, indent=2, default=str)
        tmp_path = path.with_suffix(".tmp")
        tmp_path.write_text(body, encoding="utf-8")
        tmp_path.replace(path)
        LOGGER.debug("Chat %s saved to %s (%d display row(s))", chat.id, path, len(chat.display))
        return path

    def _prune(self) -> None:
        files = sorted(self._directory.glob("*.json"), key=lambda path: path.stat().st_mtime, reverse=True)
        for stale in files[self._max_chats :]:
            try:
                stale.unlink()
            except OSError as exc:
                LOGGER.warning("Failed to prune chat history file %s: %s", stale, exc)

    def _path_for(self, chat_id: str) -> Path:
        safe_id = "".join(ch for ch in chat_id if ch.isalnum() or ch in "-_")
        if not safe_id:
            raise ValueError(f"Invalid chat id {chat_id!r}")
        return self._directory / f"{safe_id}.json"
