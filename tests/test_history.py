"""Tests for chat history persistence."""

from __future__ import annotations

import json
import os

from copilot_chat.ai.types import Message, ToolCallRequest
from copilot_chat.chat.conversation import DisplayMessage
from copilot_chat.chat.history import InMemoryHistoryStore, JsonHistoryStore, chat_title


def _chat(text: str = "How do I schedule a flow?"):
    display = [
        DisplayMessage(role="user", content=text, index=0, context_elements=("ctx",)),
        DisplayMessage(role="tool", content="Listed schedules", tool_call_id="c1"),
        DisplayMessage(role="assistant", content="Use a schedule."),
    ]
    messages = [
        Message.user(f"USER REQUEST: {text}"),
        Message.assistant(tool_calls=(ToolCallRequest("c1", "list_schedules", "{}"),)),
        Message.tool("[]", "c1"),
        Message.assistant("Use a schedule."),
    ]
    return display, messages


class TestChatTitle:
    def test_title_from_first_user_turn(self):
        display, _ = _chat("  fix   my\nscript ")
        assert chat_title(display) == "fix my script"

    def test_long_titles_are_truncated(self):
        display, _ = _chat("x" * 80)
        title = chat_title(display)
        assert len(title) == 50
        assert title.endswith("...")

    def test_untitled_chat(self):
        assert chat_title([]) == "New chat"


class TestJsonHistoryStore:
    def test_save_chat_writes_current_chat(self, tmp_path):
        store = JsonHistoryStore(tmp_path)
        display, messages = _chat()

        store.save_chat(display, messages)

        path = tmp_path / f"{store.current_id}.json"
        payload = json.loads(path.read_text(encoding="utf-8"))
        assert payload["title"] == "How do I schedule a flow?"
        assert payload["messages"][1]["tool_calls"][0]["function"]["name"] == "list_schedules"
        assert not list(tmp_path.glob("*.tmp"))

    def test_round_trip_preserves_both_logs(self, tmp_path):
        store = JsonHistoryStore(tmp_path)
        display, messages = _chat()
        store.save(display, messages)
        saved_id = store.list_chats()[0].id

        loaded = JsonHistoryStore(tmp_path).load_by_id(saved_id)

        assert loaded is not None
        assert loaded.display == display
        assert loaded.messages == messages

    def test_save_starts_new_chat(self, tmp_path):
        store = JsonHistoryStore(tmp_path)
        first_id = store.current_id
        store.save(*_chat("first"))
        store.save_chat(*_chat("second"))

        assert store.current_id != first_id
        assert sorted(chat.title for chat in store.list_chats()) == ["first", "second"]

    def test_empty_chat_is_not_written(self, tmp_path):
        store = JsonHistoryStore(tmp_path)
        store.save([], [])
        assert store.list_chats() == []

    def test_oldest_chats_are_pruned(self, tmp_path):
        store = JsonHistoryStore(tmp_path, max_chats=2)
        for number in range(3):
            store.save(*_chat(f"chat {number}"))
            newest = max(tmp_path.glob("*.json"), key=lambda path: path.stat().st_mtime_ns)
            stamp = 1_000_000 + number * 10
            os.utime(newest, (stamp, stamp))

        titles = {chat.title for chat in store.list_chats()}
        assert titles == {"chat 1", "chat 2"}

    def test_unreadable_file_is_skipped(self, tmp_path):
        (tmp_path / "broken.json").write_text("{not json", encoding="utf-8")
        store = JsonHistoryStore(tmp_path)

        assert store.load_by_id("broken") is None
        assert store.list_chats() == []

    def test_missing_chat(self, tmp_path):
        assert JsonHistoryStore(tmp_path).load_by_id("nope") is None


class TestInMemoryHistoryStore:
    def test_load_switches_current_chat(self):
        store = InMemoryHistoryStore()
        store.save(*_chat())
        (saved,) = store.list_chats()

        assert store.load_by_id(saved.id) is saved
        assert store.current_id == saved.id
