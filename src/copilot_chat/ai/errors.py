"""Error types raised by the conversation runtime.

Every runtime error carries a machine-readable ``error_code`` so callers can
surface consistent notifications without string matching.
"""

from __future__ import annotations

from typing import Any

__all__ = [
    "ErrorCode",
    "ChatRuntimeError",
    "ValidationError",
    "TransportError",
    "ToolExecutionError",
    "OperationCancelled",
    "ConversationIntegrityError",
]


class ErrorCode:
    """Constants for error codes used across the runtime."""

    # Request validation
    EMPTY_INSTRUCTIONS = "empty_instructions"
    MODE_UNAVAILABLE = "mode_unavailable"
    SESSION_BUSY = "session_busy"
    INVALID_TURN = "invalid_turn"
    INVALID_RESPONSE = "invalid_response"
    CHAT_NOT_FOUND = "chat_not_found"

    # Transport
    TRANSPORT_FAILED = "transport_failed"

    # Tools
    TOOL_FAILED = "tool_failed"
    UNKNOWN_TOOL = "unknown_tool"
    INVALID_ARGUMENTS = "invalid_arguments"

    # State
    OPERATION_CANCELLED = "operation_cancelled"
    LOG_INTEGRITY = "log_integrity"


class ChatRuntimeError(Exception):
    """Base class for all runtime errors."""

    default_code: str = "internal_error"

    def __init__(self, message: str, *, error_code: str | None = None, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.error_code = error_code or self.default_code
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        """Serialize for logs and notifications."""
        payload: dict[str, Any] = {"error": self.error_code, "message": self.message}
        if self.details:
            payload["details"] = dict(self.details)
        return payload

    def __str__(self) -> str:
        return self.message


class ValidationError(ChatRuntimeError):
    """A request was rejected before any turn was started."""

    default_code = ErrorCode.EMPTY_INSTRUCTIONS


class TransportError(ChatRuntimeError):
    """Submitting to or streaming from the completion service failed."""

    default_code = ErrorCode.TRANSPORT_FAILED


class ToolExecutionError(ChatRuntimeError):
    """A tool implementation failed; the whole turn is aborted."""

    default_code = ErrorCode.TOOL_FAILED

    def __init__(
        self,
        message: str,
        *,
        tool_name: str | None = None,
        call_id: str | None = None,
        error_code: str | None = None,
    ) -> None:
        super().__init__(message, error_code=error_code, tool_name=tool_name, call_id=call_id)
        self.tool_name = tool_name
        self.call_id = call_id


class OperationCancelled(ChatRuntimeError):
    """Raised internally when a cancellation token is observed.

    Never surfaced to callers as a failure.
    """

    default_code = ErrorCode.OPERATION_CANCELLED


class ConversationIntegrityError(ChatRuntimeError):
    """The display log references a canonical position that does not exist."""

    default_code = ErrorCode.LOG_INTEGRITY
