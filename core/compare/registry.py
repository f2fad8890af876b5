"""Stream controller registry: (run_id, model_id) -> abort handle.

One instance per process, built at application start and injected into the
stream and cancel paths. Every operation runs under one lock so a cancel
request and the owning model task never interleave on the same key.
``sweep`` is an independent leak guard for handles whose owner died
without unregistering.
"""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from threading import RLock
from typing import Any, Awaitable, Callable, Dict, List, Tuple

from core.events import StaleHandlesSwept, emit
from core.llm.abort import AbortController

log = logging.getLogger("compare.registry")

Key = Tuple[str, str]


@dataclass(slots=True)
class StreamHandle:
    controller: AbortController
    run_id: str
    model_id: str
    created_at: float


class StreamControllerRegistry:
    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._handles: Dict[Key, StreamHandle] = {}
        self._lock = RLock()
        self._clock = clock

    def register(
        self, run_id: str, model_id: str, controller: AbortController
    ) -> StreamHandle:
        handle = StreamHandle(
            controller=controller,
            run_id=run_id,
            model_id=model_id,
            created_at=self._clock(),
        )
        with self._lock:
            # last write wins on a duplicate start
            self._handles[(run_id, model_id)] = handle
        log.debug("registered %s:%s", run_id, model_id)
        return handle

    def unregister(self, run_id: str, model_id: str) -> bool:
        with self._lock:
            existed = self._handles.pop((run_id, model_id), None) is not None
        if existed:
            log.debug("unregistered %s:%s", run_id, model_id)
        return existed

    def cancel(
        self,
        run_id: str,
        model_id: str | None = None,
        reason: str = "user_cancel",
    ) -> int:
        """Abort + remove matching handles; returns how many were aborted."""
        canceled = 0
        with self._lock:
            if model_id is not None:
                keys: List[Key] = [(run_id, model_id)]
            else:
                keys = [k for k in self._handles if k[0] == run_id]
            for key in keys:
                handle = self._handles.get(key)
                if handle is None or handle.controller.aborted:
                    continue
                handle.controller.abort(reason)
                del self._handles[key]
                canceled += 1
        if canceled:
            log.info(
                "canceled run=%s model=%s streams=%d reason=%s",
                run_id,
                model_id or "*",
                canceled,
                reason,
            )
        return canceled

    def sweep(self, max_age_s: float) -> int:
        """Remove handles older than ``max_age_s`` or already aborted."""
        now = self._clock()
        with self._lock:
            stale = [
                k
                for k, h in self._handles.items()
                if h.controller.aborted or now - h.created_at > max_age_s
            ]
            for k in stale:
                del self._handles[k]
        if stale:
            log.info("swept %d stale stream handles", len(stale))
            emit(StaleHandlesSwept(removed=len(stale), max_age_s=max_age_s))
        return len(stale)

    async def run_sweeper(
        self,
        interval_s: float,
        max_age_s: float,
        stop: asyncio.Event | None = None,
        on_sweep: Callable[[], Awaitable[Any]] | None = None,
    ) -> None:
        """Periodic ``sweep`` until ``stop`` is set (or the task is cancelled).

        ``on_sweep`` runs after each pass; its failures are logged and the
        loop keeps going.
        """
        stop = stop or asyncio.Event()
        while not stop.is_set():
            try:
                await asyncio.wait_for(stop.wait(), timeout=interval_s)
            except asyncio.TimeoutError:
                self.sweep(max_age_s)
                if on_sweep is None:
                    continue
                try:
                    await on_sweep()
                except Exception:  # noqa: BLE001
                    log.exception("post-sweep hook failed")

    def get(self, run_id: str, model_id: str) -> StreamHandle | None:
        with self._lock:
            return self._handles.get((run_id, model_id))

    def active(self, run_id: str | None = None) -> List[Key]:
        with self._lock:
            return [k for k in self._handles if run_id is None or k[0] == run_id]

    def __len__(self) -> int:
        with self._lock:
            return len(self._handles)


__all__ = ["StreamControllerRegistry", "StreamHandle"]
