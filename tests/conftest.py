"""Shared pytest fixtures."""

from __future__ import annotations

import pytest

from copilot_chat.ai.modes import ModePrerequisites, ModeStateMachine, ScriptEditorOptions
from tests.helpers import RecordingCallbacks, RecordingNotifier, ScriptedCompletionService


@pytest.fixture
def completion_service() -> ScriptedCompletionService:
    return ScriptedCompletionService()


@pytest.fixture
def callbacks() -> RecordingCallbacks:
    return RecordingCallbacks()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def modes() -> ModeStateMachine:
    """Navigator-mode state machine without editors attached."""
    return ModeStateMachine()


@pytest.fixture
def script_prerequisites() -> ModePrerequisites:
    return ModePrerequisites(script_options=ScriptEditorOptions(lang="python3"))


@pytest.fixture(autouse=True)
def _isolate_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in (
        "COPILOT_CHAT_API_KEY",
        "COPILOT_CHAT_BASE_URL",
        "COPILOT_CHAT_MODEL",
        "COPILOT_CHAT_CONTEXT_WINDOW",
        "COPILOT_CHAT_DEBUG_LOGGING",
        "COPILOT_CHAT_HISTORY_DIR",
        "COPILOT_CHAT_MAX_RETRIES",
        "COPILOT_CHAT_MAX_TOOL_ITERATIONS",
        "COPILOT_CHAT_ORGANIZATION",
        "COPILOT_CHAT_REQUEST_TIMEOUT",
        "COPILOT_CHAT_LOG_DIR",
        "COPILOT_CHAT_LOG_LEVEL",
        "COPILOT_CHAT_TEMPERATURE",
    ):
        monkeypatch.delenv(name, raising=False)
