"""Completion transport, tool loop, and mode state machine."""

from .cancellation import CancellationController, CancellationToken
from .client import ClientSettings, OpenAICompletionService
from .dispatch import CompletionService, ToolDispatchLoop
from .modes import AIMode, ModePrerequisites, ModeStateMachine, ModeToolkit, ScriptEditorOptions
from .types import CompletionChunk, Message, ToolCallDelta, ToolCallRequest

__all__ = [
    "AIMode",
    "CancellationController",
    "CancellationToken",
    "ClientSettings",
    "CompletionChunk",
    "CompletionService",
    "Message",
    "ModePrerequisites",
    "ModeStateMachine",
    "ModeToolkit",
    "OpenAICompletionService",
    "ScriptEditorOptions",
    "ToolCallDelta",
    "ToolCallRequest",
    "ToolDispatchLoop",
]
