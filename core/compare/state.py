"""Compare run state machine.

Per result: ``pending → running → {completed | canceled | failed}``;
terminal states absorb every later transition. Each transition takes the
per-(run, model) lock, so when a model task completes at the same instant a
cancel request arrives, whichever acquires the lock first wins and the other
becomes a no-op. Store writes are conditional as well (see
``core.compare.store``), which keeps the durable copy monotonic when the
cancel path only reaches the store.

Buffering policy: text/reasoning deltas are appended to an in-memory
per-model buffer and written once, at the terminal transition. Never one
write per token.

Persistence failures are logged, counted and emitted as
``PersistenceFailed``; the in-memory state stays authoritative for the live
stream.

Run status derivation (``complete_run``): every result canceled → canceled;
every result failed → failed; otherwise completed (partial failure is a
completed run). Aggregation abort uses ``cancel_run``.

``reap_stale`` is the leak guard for runs tracked but never streamed.
"""
from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Dict, List, Sequence, Tuple

from core.events import PersistenceFailed, emit
from core.llm.types import TokenUsage

from .models import (
    CompareResult,
    CompareRun,
    TERMINAL_RESULT_STATUSES,
    ResultStatus,
    RunStatus,
    utcnow,
)
from .store import CompareStore

log = logging.getLogger("compare.state")

Key = Tuple[str, str]


@dataclass(slots=True)
class LiveResult:
    """In-memory view of one result while its run is being streamed."""
    record: CompareResult
    content: List[str] = field(default_factory=list)
    reasoning: List[str] = field(default_factory=list)
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)

    @property
    def status(self) -> ResultStatus:
        return self.record.status


def derive_run_status(statuses: Sequence[ResultStatus]) -> RunStatus:
    if any(s not in TERMINAL_RESULT_STATUSES for s in statuses):
        return RunStatus.RUNNING
    if statuses and all(s is ResultStatus.CANCELED for s in statuses):
        return RunStatus.CANCELED
    if statuses and all(s is ResultStatus.FAILED for s in statuses):
        return RunStatus.FAILED
    return RunStatus.COMPLETED


class RunStateMachine:
    def __init__(
        self,
        store: CompareStore,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self._clock = clock
        self._runs: Dict[str, CompareRun] = {}
        self._live: Dict[Key, LiveResult] = {}
        self._run_locks: Dict[str, asyncio.Lock] = {}
        self._tracked_at: Dict[str, datetime] = {}

    # ------------------------------------------------------------ helpers
    async def _persist(
        self,
        op: str,
        run_id: str,
        model_id: str | None,
        write: Callable[[], Awaitable],
    ):
        try:
            return await write()
        except Exception as e:  # noqa: BLE001
            log.exception(
                "persistence failed op=%s run=%s model=%s",
                op,
                run_id,
                model_id,
            )
            emit(
                PersistenceFailed(
                    op=op, run_id=run_id, model_id=model_id, message=str(e)
                )
            )
            return None

    def _run_lock(self, run_id: str) -> asyncio.Lock:
        return self._run_locks.setdefault(run_id, asyncio.Lock())

    def live(self, run_id: str, model_id: str) -> LiveResult | None:
        return self._live.get((run_id, model_id))

    def run(self, run_id: str) -> CompareRun | None:
        return self._runs.get(run_id)

    def results(self, run_id: str) -> List[CompareResult]:
        run = self._runs.get(run_id)
        if run is None:
            return []
        return [
            replace(self._live[(run_id, m)].record)
            for m in run.model_ids
            if (run_id, m) in self._live
        ]

    def _track(self, run: CompareRun, results: List[CompareResult]) -> None:
        self._runs[run.id] = run
        self._tracked_at[run.id] = self._clock()
        for r in results:
            self._live[(run.id, r.model_id)] = LiveResult(record=replace(r))

    # ---------------------------------------------------------- lifecycle
    async def create_run(
        self,
        user_id: str,
        chat_id: str,
        prompt: str,
        model_ids: Sequence[str],
        run_id: str | None = None,
    ) -> CompareRun:
        """Allocate a run + one pending result per model and persist them.

        Unlike terminal writes, a failure here propagates: there is nothing
        to stream for a run that was never recorded.
        """
        now = self._clock()
        run = CompareRun(
            id=run_id or str(uuid.uuid4()),
            user_id=user_id,
            chat_id=chat_id,
            prompt=prompt,
            model_ids=list(model_ids),
            status=RunStatus.RUNNING,
            created_at=now,
            updated_at=now,
        )
        results = [
            CompareResult(run_id=run.id, model_id=m, created_at=now)
            for m in run.model_ids
        ]
        await self.store.create_run(run, results)
        self._track(run, results)
        return run

    def adopt_run(
        self, run: CompareRun, results: List[CompareResult]
    ) -> CompareRun:
        """Track an already persisted run (reuse of a supplied run id)."""
        self._track(run, results)
        return run

    async def start_result(
        self, run_id: str, model_id: str
    ) -> datetime | None:
        """pending → running; returns the server start time (None: no-op)."""
        lr = self._live.get((run_id, model_id))
        if lr is None:
            return None
        async with lr.lock:
            if lr.status is not ResultStatus.PENDING:
                return None
            started_at = self._clock()
            lr.record.status = ResultStatus.RUNNING
            lr.record.server_started_at = started_at
            await self._persist(
                "start_result",
                run_id,
                model_id,
                lambda: self.store.start_result(run_id, model_id, started_at),
            )
            return started_at

    def append_delta(
        self, run_id: str, model_id: str, kind: str, delta: str
    ) -> bool:
        lr = self._live.get((run_id, model_id))
        if lr is None or lr.status is not ResultStatus.RUNNING:
            return False
        if kind == "reasoning":
            lr.reasoning.append(delta)
        else:
            lr.content.append(delta)
        return True

    async def complete_result(
        self,
        run_id: str,
        model_id: str,
        usage: TokenUsage | None = None,
        *,
        content: str | None = None,
        reasoning: str | None = None,
        started_at: datetime | None = None,
        completed_at: datetime | None = None,
    ) -> CompareResult | None:
        """running → completed with content, usage and timing (set once)."""
        lr = self._live.get((run_id, model_id))
        if lr is None:
            return None
        async with lr.lock:
            if lr.status is not ResultStatus.RUNNING:
                return None
            rec = lr.record
            started = started_at or rec.server_started_at or self._clock()
            completed = completed_at or self._clock()
            rec.status = ResultStatus.COMPLETED
            rec.content = (
                content if content is not None else "".join(lr.content)
            )
            rec.reasoning = (
                reasoning if reasoning is not None else "".join(lr.reasoning)
            )
            rec.usage = usage
            rec.server_started_at = started
            rec.server_completed_at = completed
            rec.completed_at = completed
            rec.inference_time_ms = max(
                0, int((completed - started).total_seconds() * 1000)
            )
            snapshot = replace(rec)
            await self._persist(
                "complete_result",
                run_id,
                model_id,
                lambda: self.store.finish_result(snapshot),
            )
            return replace(rec)

    async def fail_result(
        self, run_id: str, model_id: str, error: str
    ) -> bool:
        """running → failed; partial content is kept, never retried."""
        lr = self._live.get((run_id, model_id))
        if lr is None:
            return False
        async with lr.lock:
            if lr.status is not ResultStatus.RUNNING:
                return False
            rec = lr.record
            now = self._clock()
            rec.status = ResultStatus.FAILED
            rec.error = error
            rec.content = "".join(lr.content)
            rec.reasoning = "".join(lr.reasoning)
            rec.server_completed_at = now
            rec.completed_at = now
            snapshot = replace(rec)
            await self._persist(
                "fail_result",
                run_id,
                model_id,
                lambda: self.store.finish_result(snapshot),
            )
            return True

    async def cancel_result(self, run_id: str, model_id: str) -> bool:
        """Any non-terminal → canceled. Returns False if already terminal."""
        lr = self._live.get((run_id, model_id))
        if lr is None:
            # not streamed by this process: conditional store write only
            changed = await self._persist(
                "cancel_result",
                run_id,
                model_id,
                lambda: self.store.cancel_results(
                    run_id, [model_id], self._clock()
                ),
            )
            return bool(changed)
        async with lr.lock:
            if lr.record.terminal:
                return False
            rec = lr.record
            now = self._clock()
            rec.status = ResultStatus.CANCELED
            rec.content = "".join(lr.content)
            rec.reasoning = "".join(lr.reasoning)
            rec.completed_at = now
            snapshot = replace(rec)
            await self._persist(
                "cancel_result",
                run_id,
                model_id,
                lambda: self.store.finish_result(snapshot),
            )
            return True

    async def cancel_run(self, run_id: str) -> List[str]:
        """Cancel every non-terminal result and mark the run canceled."""
        run = self._runs.get(run_id)
        if run is None:
            stored = await self._persist(
                "cancel_run",
                run_id,
                None,
                lambda: self.store.cancel_results(
                    run_id, None, self._clock()
                ),
            )
            await self._persist(
                "finish_run",
                run_id,
                None,
                lambda: self.store.finish_run(
                    run_id, RunStatus.CANCELED, self._clock()
                ),
            )
            return list(stored or [])
        canceled = [
            m for m in run.model_ids if await self.cancel_result(run_id, m)
        ]
        await self._finish_run(run, RunStatus.CANCELED)
        return canceled

    async def complete_run(self, run_id: str) -> RunStatus:
        """Derive and persist the final run status once results are terminal.

        Results still pending here never started (their task ended before
        ``start_result``) and are canceled first.
        """
        run = self._runs.get(run_id)
        if run is None:
            raise KeyError(run_id)
        for m in run.model_ids:
            lr = self._live.get((run_id, m))
            if lr is not None and not lr.record.terminal:
                await self.cancel_result(run_id, m)
        statuses = [
            self._live[(run_id, m)].status
            for m in run.model_ids
            if (run_id, m) in self._live
        ]
        return await self._finish_run(run, derive_run_status(statuses))

    async def _finish_run(
        self, run: CompareRun, status: RunStatus
    ) -> RunStatus:
        async with self._run_lock(run.id):
            if run.terminal:
                return run.status
            now = self._clock()
            run.status = status
            run.updated_at = now
            await self._persist(
                "finish_run",
                run.id,
                None,
                lambda: self.store.finish_run(run.id, status, now),
            )
            log.info("run %s finished status=%s", run.id, status.value)
            return status

    def release(self, run_id: str) -> None:
        """Drop in-memory state of a finished run (store stays durable)."""
        run = self._runs.pop(run_id, None)
        self._run_locks.pop(run_id, None)
        self._tracked_at.pop(run_id, None)
        if run is None:
            return
        for m in run.model_ids:
            self._live.pop((run_id, m), None)

    async def reap_stale(
        self,
        max_age_s: float,
        is_streaming: Callable[[str], bool],
    ) -> List[Tuple[str, List[str]]]:
        """Cancel and release runs tracked longer than ``max_age_s``.

        Only runs with nothing streaming for them are touched. Returns
        ``(run_id, canceled model ids)`` per run that was still running;
        already terminal ones are only released.
        """
        cutoff = self._clock() - timedelta(seconds=max_age_s)
        stale = [
            run
            for run_id, run in list(self._runs.items())
            if self._tracked_at.get(run_id, cutoff) <= cutoff
            and not is_streaming(run_id)
        ]
        reaped = []
        for run in stale:
            if not run.terminal:
                canceled = await self.cancel_run(run.id)
                log.warning(
                    "reaped orphaned run %s canceled=%s", run.id, canceled
                )
                reaped.append((run.id, canceled))
            self.release(run.id)
        return reaped


__all__ = ["RunStateMachine", "LiveResult", "derive_run_status"]
