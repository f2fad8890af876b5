"""Cancellation service: abort one model or a whole run.

Callers must already be authorized for the run; ownership is checked by
the HTTP layer, not here. Canceling something that already finished is a
valid no-op (``canceled_streams == 0``, persisted rows untouched).
"""
from __future__ import annotations

import logging
from dataclasses import dataclass

from core import metrics
from core.events import CancelRequested, ModelStreamCancelled, emit

from .registry import StreamControllerRegistry
from .state import RunStateMachine

log = logging.getLogger("compare.cancel")


@dataclass(slots=True)
class CancelOutcome:
    canceled_streams: int
    message: str

    def to_wire(self) -> dict:  # noqa: D401
        return {
            "success": True,
            "message": self.message,
            "canceledStreams": self.canceled_streams,
        }


class CancellationService:
    def __init__(
        self, registry: StreamControllerRegistry, state: RunStateMachine
    ) -> None:
        self.registry = registry
        self.state = state

    async def cancel(
        self, run_id: str, model_id: str | None = None
    ) -> CancelOutcome:
        scope = "model" if model_id else "run"
        metrics.inc("compare_cancel_requests_total", {"scope": scope})
        # abort first: the owning task stops emitting before any write
        count = self.registry.cancel(run_id, model_id, reason="user_cancel")
        if model_id is not None:
            changed = [model_id] if await self.state.cancel_result(
                run_id, model_id
            ) else []
            message = f"Canceled model {model_id}"
        else:
            changed = await self.state.cancel_run(run_id)
            message = "Canceled compare run"
        for mid in changed:
            emit(
                ModelStreamCancelled(
                    run_id=run_id, model_id=mid, reason="user_cancel"
                )
            )
        emit(
            CancelRequested(
                run_id=run_id, model_id=model_id, canceled_streams=count
            )
        )
        log.info(
            "cancel run=%s model=%s streams=%d results=%d",
            run_id,
            model_id or "*",
            count,
            len(changed),
        )
        return CancelOutcome(canceled_streams=count, message=message)


__all__ = ["CancellationService", "CancelOutcome"]
