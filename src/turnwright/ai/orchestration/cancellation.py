"""Cooperative cancellation shared by the coordinator, backend and tools."""

from __future__ import annotations

import asyncio
import logging
from typing import Callable

LOGGER = logging.getLogger(__name__)

__all__ = ["CancellationSignal"]


class CancellationSignal:
    """One-shot cancellation flag with callbacks.

    The signal wraps an :class:`asyncio.Event` so collaborators can either
    poll :attr:`is_set` between awaits or ``await wait()`` alongside their own
    work. Callbacks registered with :meth:`add_callback` run synchronously
    the first time :meth:`cancel` is called.
    """

    __slots__ = ("_event", "_callbacks", "_reason")

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._callbacks: list[Callable[[], None]] = []
        self._reason: str | None = None

    @property
    def is_set(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str | None:
        return self._reason

    def cancel(self, reason: str | None = None) -> bool:
        """Raise the signal. Returns False when it was already raised."""

        if self._event.is_set():
            return False
        self._reason = reason
        self._event.set()
        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            try:
                callback()
            except Exception:  # pragma: no cover - callback bugs must not block cancel
                LOGGER.exception("Cancellation callback failed")
        return True

    def add_callback(self, callback: Callable[[], None]) -> Callable[[], None]:
        """Register ``callback``; it runs immediately when already cancelled.

        Returns a function removing the registration.
        """

        if self._event.is_set():
            callback()
            return lambda: None
        self._callbacks.append(callback)

        def _remove() -> None:
            try:
                self._callbacks.remove(callback)
            except ValueError:
                pass

        return _remove

    async def wait(self) -> None:
        await self._event.wait()

    def __repr__(self) -> str:  # pragma: no cover - debug helper
        state = "cancelled" if self.is_set else "active"
        return f"CancellationSignal({state})"
