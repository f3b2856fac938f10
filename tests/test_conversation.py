"""Tests for the pure conversation log transitions."""

from __future__ import annotations

import pytest

from copilot_chat.ai.errors import ConversationIntegrityError, ErrorCode, ValidationError
from copilot_chat.ai.types import Message
from copilot_chat.chat.conversation import (
    ConversationState,
    DisplayMessage,
    append_display,
    begin_turn,
    clear_error,
    flag_last_user_error,
    fold_reply,
    set_tool_status,
    truncate_for_restart,
)


def _three_turns() -> ConversationState:
    state = ConversationState()
    for number in (1, 2, 3):
        state = begin_turn(state, f"q{number}", Message.user(f"USER REQUEST: q{number}"))
        state = append_display(state, DisplayMessage(role="assistant", content=f"a{number}"))
        state = fold_reply(state, [Message.assistant(f"a{number}")])
    return state


class TestBeginTurn:
    def test_index_records_canonical_length(self):
        state = _three_turns()
        user_rows = [entry for entry in state.display if entry.role == "user"]
        assert [entry.index for entry in user_rows] == [0, 2, 4]
        assert all(state.messages[entry.index].role == "user" for entry in user_rows)

    def test_context_is_snapshotted(self):
        context = ["selection"]
        state = begin_turn(ConversationState(), "q", Message.user("q"), context_elements=context, snapshot={"v": 1})
        context.append("later")
        assert state.display[0].context_elements == ("selection",)
        assert state.display[0].snapshot == {"v": 1}

    def test_transitions_do_not_mutate_input(self):
        state = ConversationState()
        begin_turn(state, "q", Message.user("q"))
        assert state == ConversationState()


class TestDisplayUpdates:
    def test_tool_status_is_upserted_by_call_id(self):
        state = set_tool_status(ConversationState(), "c1", "Running...")
        state = set_tool_status(state, "c2", "Queued")
        state = set_tool_status(state, "c1", "Done")
        assert [(entry.tool_call_id, entry.content) for entry in state.display] == [("c1", "Done"), ("c2", "Queued")]

    def test_flag_and_clear_error(self):
        state = flag_last_user_error(_three_turns())
        assert state.display[4].error is True
        assert not any(entry.error for entry in state.display[:4])
        assert clear_error(state, 4).display[4].error is False

    def test_fold_reply_with_nothing_is_identity(self):
        state = _three_turns()
        assert fold_reply(state, []) is state


class TestTruncateForRestart:
    def test_restart_second_of_three_turns(self):
        state = _three_turns()

        truncated, entry = truncate_for_restart(state, 2)

        assert entry.content == "q2"
        assert truncated.display == state.display[:2]
        assert truncated.messages == state.messages[:2]

    def test_non_user_row_is_rejected(self):
        with pytest.raises(ValidationError) as excinfo:
            truncate_for_restart(_three_turns(), 1)
        assert excinfo.value.error_code == ErrorCode.INVALID_TURN

    def test_out_of_range_row_is_rejected(self):
        with pytest.raises(ValidationError):
            truncate_for_restart(_three_turns(), 42)

    def test_dangling_index_fails_loudly(self):
        state = _three_turns()
        broken = ConversationState(display=state.display, messages=state.messages[:3])

        with pytest.raises(ConversationIntegrityError):
            truncate_for_restart(broken, 4)

    def test_index_pointing_at_non_user_message_fails(self):
        state = _three_turns()
        shifted = ConversationState(display=state.display, messages=(Message.system("x"), *state.messages))

        with pytest.raises(ConversationIntegrityError):
            truncate_for_restart(shifted, 2)


def test_display_message_round_trip_keeps_optional_fields():
    entry = DisplayMessage(role="user", content="q", error=True, context_elements=("c",), snapshot={"a": 1}, index=3)
    assert DisplayMessage.from_dict(entry.to_dict()) == entry
