"""SSE multiplexer: N concurrent model tasks → one ordered event stream.

Fan-out: one task per model, each under its own ``AbortController``
registered in the ``StreamControllerRegistry``. Fan-in: a bounded
``asyncio.Queue`` (producers suspend when the consumer is slow). A model
task puts its own events in order, so per-model order is preserved while
models interleave freely.

Guarantees:
    - ``run_start`` first, ``run_end`` last and only after every model task
      ended (terminal state reached);
    - deltas already queued for a model whose handle was aborted are dropped;
    - heartbeat every ``heartbeat_interval_s``;
    - on client disconnect, the request ceiling or an unexpected aggregation
      error: stop writing, abort every handle of the run, mark the run
      canceled and do not send ``run_end``.
"""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import AsyncIterator, List, Sequence

from core import metrics
from core.events import (
    CompareRunFinished,
    ModelStreamCancelled,
    ModelStreamCompleted,
    ModelStreamFailed,
    ModelStreamStarted,
    emit,
)
from core.llm.abort import AbortController
from core.llm.invocation import ModelInvoker
from core.llm.types import (
    ChatTurn,
    InvocationCompleted,
    InvocationFailed,
    ReasoningDelta,
    TextDelta,
)

from .models import CompareRun, iso
from .registry import StreamControllerRegistry
from .state import RunStateMachine
from .usage import UsageService
from .wire import (
    Delta,
    Heartbeat,
    ModelEnd,
    ModelError,
    ModelStart,
    ReasoningDeltaEvent,
    RunEnd,
    RunStart,
    StreamEvent,
)

log = logging.getLogger("compare.stream")

_MODEL_DONE = object()


@dataclass(slots=True)
class _ModelCrashed:
    error: BaseException


@dataclass(slots=True)
class CompareContext:
    """Everything one compare stream needs once validation passed."""
    run: CompareRun
    user_id: str
    prompt: str
    system: str | None = None
    history: Sequence[ChatTurn] = field(default_factory=list)


class CompareMultiplexer:
    def __init__(
        self,
        *,
        state: RunStateMachine,
        registry: StreamControllerRegistry,
        invoker: ModelInvoker,
        usage: UsageService | None = None,
        heartbeat_interval_s: float = 10.0,
        request_timeout_s: float = 60.0,
        queue_max_events: int = 256,
    ) -> None:
        self.state = state
        self.registry = registry
        self.invoker = invoker
        self.usage = usage
        self.heartbeat_interval_s = heartbeat_interval_s
        self.request_timeout_s = request_timeout_s
        self.queue_max_events = queue_max_events

    async def stream(self, ctx: CompareContext) -> AsyncIterator[StreamEvent]:
        run = ctx.run
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.queue_max_events)
        tasks: List[asyncio.Task] = []
        t0 = time.monotonic()
        deadline = t0 + self.request_timeout_s
        next_heartbeat = t0 + self.heartbeat_interval_s
        abort_reason = "disconnect"
        finished = False
        metrics.inc("sse_streams_open_total")
        try:
            yield RunStart(
                run_id=run.id, chat_id=run.chat_id, models=run.model_ids
            )
            for model_id in run.model_ids:
                ctrl = AbortController()
                self.registry.register(run.id, model_id, ctrl)
                tasks.append(
                    asyncio.create_task(
                        self._model_task(ctx, model_id, ctrl, queue),
                        name=f"compare:{run.id}:{model_id}",
                    )
                )
            pending = len(tasks)
            while pending:
                now = time.monotonic()
                if now >= deadline:
                    abort_reason = "timeout"
                    log.warning(
                        "run %s hit request ceiling %.0fs",
                        run.id,
                        self.request_timeout_s,
                    )
                    return
                if now >= next_heartbeat:
                    next_heartbeat = now + self.heartbeat_interval_s
                    metrics.inc("sse_heartbeats_total")
                    yield Heartbeat()
                    continue
                try:
                    ctrl, item = await asyncio.wait_for(
                        queue.get(),
                        timeout=min(next_heartbeat, deadline) - now,
                    )
                except asyncio.TimeoutError:
                    continue
                if item is _MODEL_DONE:
                    pending -= 1
                    continue
                if isinstance(item, _ModelCrashed):
                    raise item.error
                if (
                    isinstance(item, (Delta, ReasoningDeltaEvent))
                    and ctrl.aborted
                ):
                    metrics.inc(
                        "sse_dropped_deltas_total", {"model": item.model_id}
                    )
                    continue
                yield item
            status = await self.state.complete_run(run.id)
            finished = True
            emit(
                CompareRunFinished(
                    run_id=run.id,
                    status=status.value,
                    duration_ms=int((time.monotonic() - t0) * 1000),
                    outcomes={
                        r.model_id: r.status.value
                        for r in self.state.results(run.id)
                    },
                )
            )
            yield RunEnd(run_id=run.id)
        except Exception:  # noqa: BLE001
            # aggregation safety net: close the stream, run → canceled
            abort_reason = "aggregation_error"
            log.exception("compare run %s aggregation failed", run.id)
        finally:
            metrics.inc(
                "sse_streams_closed_total",
                {"reason": "run_end" if finished else abort_reason},
            )
            if not finished:
                # abort synchronously first: cleanup below is best effort
                self.registry.cancel(run.id, reason=abort_reason)
                cleanup = asyncio.ensure_future(
                    self._abort_run(run, tasks, abort_reason, t0)
                )
                try:
                    await asyncio.shield(cleanup)
                except asyncio.CancelledError:
                    log.debug("run %s cleanup continues detached", run.id)
                    raise
            else:
                self.state.release(run.id)

    async def _abort_run(
        self,
        run: CompareRun,
        tasks: List[asyncio.Task],
        reason: str,
        t0: float,
    ) -> None:
        for t in tasks:
            t.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        for model_id in await self.state.cancel_run(run.id):
            emit(
                ModelStreamCancelled(
                    run_id=run.id, model_id=model_id, reason=reason
                )
            )
        current = self.state.run(run.id)
        emit(
            CompareRunFinished(
                run_id=run.id,
                status=(current or run).status.value,
                duration_ms=int((time.monotonic() - t0) * 1000),
            )
        )
        self.state.release(run.id)

    async def reap_orphans(self) -> List[str]:
        """Cancel runs that were prepared but never streamed.

        A response closed before its first chunk never enters ``stream``,
        so nothing else would finish the run or release its state.
        """
        reaped = await self.state.reap_stale(
            self.request_timeout_s,
            lambda run_id: bool(self.registry.active(run_id)),
        )
        for run_id, canceled in reaped:
            for model_id in canceled:
                emit(
                    ModelStreamCancelled(
                        run_id=run_id, model_id=model_id, reason="orphaned"
                    )
                )
            emit(
                CompareRunFinished(
                    run_id=run_id, status="canceled", duration_ms=0
                )
            )
        if reaped:
            metrics.inc("compare_orphan_runs_reaped_total", value=len(reaped))
        return [run_id for run_id, _ in reaped]

    async def _model_task(
        self,
        ctx: CompareContext,
        model_id: str,
        ctrl: AbortController,
        queue: asyncio.Queue,
    ) -> None:
        try:
            await self._run_model(ctx, model_id, ctrl, queue)
        except asyncio.CancelledError:
            raise
        except Exception as e:  # noqa: BLE001
            log.exception(
                "model task crashed run=%s model=%s", ctx.run.id, model_id
            )
            await queue.put((ctrl, _ModelCrashed(e)))
        finally:
            self.registry.unregister(ctx.run.id, model_id)
        await queue.put((ctrl, _MODEL_DONE))

    async def _run_model(
        self,
        ctx: CompareContext,
        model_id: str,
        ctrl: AbortController,
        queue: asyncio.Queue,
    ) -> None:
        run_id = ctx.run.id
        started_at = await self.state.start_result(run_id, model_id)
        if started_at is None or ctrl.aborted:
            self.registry.unregister(run_id, model_id)
            if await self.state.cancel_result(run_id, model_id):
                emit(
                    ModelStreamCancelled(
                        run_id=run_id,
                        model_id=model_id,
                        reason=ctrl.signal.reason or "user_cancel",
                    )
                )
            return
        await queue.put(
            (ctrl, ModelStart(run_id, model_id, server_started_at=started_at))
        )
        emit(
            ModelStreamStarted(
                run_id=run_id,
                model_id=model_id,
                server_started_at=iso(started_at),
            )
        )
        t_start = time.monotonic()
        first_delta = True
        outcome = None
        async for ev in self.invoker.invoke(
            model_id, ctx.system, ctx.history, ctx.prompt, ctrl.signal
        ):
            if isinstance(ev, (TextDelta, ReasoningDelta)):
                if first_delta:
                    first_delta = False
                    metrics.observe(
                        "compare_first_delta_latency_ms",
                        (time.monotonic() - t_start) * 1000.0,
                        {"model": model_id},
                    )
                if isinstance(ev, TextDelta):
                    self.state.append_delta(run_id, model_id, "text", ev.delta)
                    out = Delta(run_id, model_id, ev.delta)
                else:
                    self.state.append_delta(
                        run_id, model_id, "reasoning", ev.delta
                    )
                    out = ReasoningDeltaEvent(run_id, model_id, ev.delta)
                await queue.put((ctrl, out))
            else:
                outcome = ev
        # release the handle before the terminal transition: a cancel that
        # finds no handle reports 0 and the transition below stands
        self.registry.unregister(run_id, model_id)
        if ctrl.aborted or outcome is None:
            if await self.state.cancel_result(run_id, model_id):
                emit(
                    ModelStreamCancelled(
                        run_id=run_id,
                        model_id=model_id,
                        reason=ctrl.signal.reason or "user_cancel",
                    )
                )
            return
        if isinstance(outcome, InvocationFailed):
            if await self.state.fail_result(run_id, model_id, outcome.message):
                emit(
                    ModelStreamFailed(
                        run_id=run_id,
                        model_id=model_id,
                        error_type=outcome.error_type,
                        message=outcome.message,
                    )
                )
                await queue.put(
                    (ctrl, ModelError(run_id, model_id, outcome.message))
                )
            return
        if not isinstance(outcome, InvocationCompleted):
            raise TypeError(f"unexpected invocation outcome: {outcome!r}")
        result = await self.state.complete_result(
            run_id, model_id, usage=outcome.usage
        )
        if result is None:
            return
        emit(
            ModelStreamCompleted(
                run_id=run_id,
                model_id=model_id,
                inference_time_ms=result.inference_time_ms or 0,
                output_chars=len(result.content),
                reasoning_chars=len(result.reasoning),
                input_tokens=result.usage.input_tokens if result.usage else None,
                output_tokens=(
                    result.usage.output_tokens if result.usage else None
                ),
            )
        )
        await queue.put(
            (
                ctrl,
                ModelEnd(
                    run_id=run_id,
                    model_id=model_id,
                    usage=result.usage,
                    server_started_at=result.server_started_at,
                    server_completed_at=result.server_completed_at,
                    inference_time_ms=result.inference_time_ms or 0,
                ),
            )
        )
        if self.usage is not None:
            await self.usage.credit(
                ctx.user_id, model_id, ctx.prompt, result.content
            )


__all__ = ["CompareMultiplexer", "CompareContext"]
