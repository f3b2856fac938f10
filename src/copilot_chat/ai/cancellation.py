"""Cooperative cancellation for in-flight requests."""

from __future__ import annotations

import asyncio
import logging
from typing import Callable

from .errors import OperationCancelled

__all__ = ["CancellationToken", "CancellationController"]

LOGGER = logging.getLogger(__name__)


class CancellationToken:
    """Advisory cancellation flag shared by one request and its tools.

    Cancelling is idempotent. Registered callbacks run once, synchronously,
    at the moment the token is cancelled (or immediately when registered on
    an already-cancelled token).
    """

    __slots__ = ("_cancelled", "_callbacks", "reason")

    def __init__(self) -> None:
        self._cancelled = False
        self._callbacks: list[Callable[[], None]] = []
        self.reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self, reason: str | None = None) -> bool:
        """Signal cancellation. Returns False if the token was already cancelled."""
        if self._cancelled:
            return False
        self._cancelled = True
        self.reason = reason
        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            try:
                callback()
            except Exception:  # pragma: no cover - callback bugs must not block cancellation
                LOGGER.debug("Cancellation callback failed", exc_info=True)
        return True

    def add_callback(self, callback: Callable[[], None]) -> None:
        if self._cancelled:
            callback()
            return
        self._callbacks.append(callback)

    def remove_callback(self, callback: Callable[[], None]) -> None:
        if callback in self._callbacks:
            self._callbacks.remove(callback)

    async def wait(self) -> None:
        """Suspend until the token is cancelled."""
        if self._cancelled:
            return
        waiter = asyncio.get_running_loop().create_future()

        def _wake() -> None:
            if not waiter.done():
                waiter.set_result(None)

        self.add_callback(_wake)
        try:
            await waiter
        finally:
            self.remove_callback(_wake)

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise OperationCancelled(self.reason or "Request was cancelled")


class CancellationController:
    """Owns the token of the single in-flight request of a session."""

    def __init__(self) -> None:
        self._active: CancellationToken | None = None

    @property
    def active(self) -> CancellationToken | None:
        return self._active

    def begin(self) -> CancellationToken:
        """Create the token for a new request, replacing the previous one."""
        self._active = CancellationToken()
        return self._active

    def cancel(self, reason: str | None = None) -> bool:
        token = self._active
        if token is None:
            LOGGER.debug("cancel() called but no request is active")
            return False
        cancelled = token.cancel(reason or "Cancelled by user")
        if cancelled:
            LOGGER.info("Cancelling active chat request")
        return cancelled

    def release(self, token: CancellationToken) -> None:
        """Forget ``token`` if it is still the active one."""
        if self._active is token:
            self._active = None
