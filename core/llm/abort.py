"""Cooperative cancellation primitive for model invocations.

``AbortController.abort()`` is single-shot: the first call flips the signal
and returns True, later calls are no-ops returning False. Consumers poll
``signal.aborted`` at yield points or ``await signal.wait()`` in a race.
"""
from __future__ import annotations

import asyncio


class AbortSignal:
    __slots__ = ("_event", "_reason")

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._reason: str | None = None

    @property
    def aborted(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str | None:
        return self._reason

    async def wait(self) -> None:
        await self._event.wait()


class AbortController:
    __slots__ = ("signal",)

    def __init__(self) -> None:
        self.signal = AbortSignal()

    @property
    def aborted(self) -> bool:
        return self.signal.aborted

    def abort(self, reason: str = "aborted") -> bool:  # noqa: D401
        if self.signal.aborted:
            return False
        self.signal._reason = reason
        self.signal._event.set()
        return True


__all__ = ["AbortController", "AbortSignal"]
