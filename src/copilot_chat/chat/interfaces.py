"""Collaborators the chat session talks to."""

from __future__ import annotations

import logging
from typing import Any, Protocol, Sequence

__all__ = ["ContextProvider", "Notifier", "LoggingNotifier", "StaticContextProvider"]

LOGGER = logging.getLogger(__name__)


class ContextProvider(Protocol):
    """Supplies the context elements the user attached to the next request."""

    def selected_context(self) -> list[Any]:
        ...


class Notifier(Protocol):
    """Surface for user-facing notifications (toasts, status bar)."""

    def notify(self, message: str, is_error: bool = False) -> None:
        ...


class LoggingNotifier:
    """Notifier that writes to the log."""

    def notify(self, message: str, is_error: bool = False) -> None:
        if is_error:
            LOGGER.error(message)
        else:
            LOGGER.info(message)


class StaticContextProvider:
    """Context provider returning a fixed list, empty by default."""

    def __init__(self, elements: Sequence[Any] = ()) -> None:
        self.elements = list(elements)

    def selected_context(self) -> list[Any]:
        return list(self.elements)
