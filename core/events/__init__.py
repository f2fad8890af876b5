"""Compare lifecycle events + in-process bus.

Events are slotted dataclasses; ``emit(ev)`` dispatches ``(name, payload)``
to every any-subscriber and to handlers registered for that event name.
Handler isolation: exceptions are counted, never propagated to the
emitting stream.
"""
from __future__ import annotations

from dataclasses import dataclass, asdict
from threading import RLock
from time import time
from typing import Any, Callable, Dict, List, Protocol

from core import metrics as _metrics

EventHandler = Callable[[str, Dict[str, Any]], None]
NamedHandler = Callable[[Dict[str, Any]], None]


class SupportsEvent(Protocol):  # pragma: no cover
    def to_event(self) -> Dict[str, Any]:  # noqa: D401
        ...


@dataclass(slots=True)
class BaseEvent:
    def to_event(self) -> Dict[str, Any]:  # noqa: D401
        data = asdict(self)
        data["ts"] = data.get("ts") or time()
        return data


@dataclass(slots=True)
class CompareRunStarted(BaseEvent):
    run_id: str
    chat_id: str
    user_id: str
    model_ids: list[str]
    reused: bool = False


@dataclass(slots=True)
class ModelStreamStarted(BaseEvent):
    run_id: str
    model_id: str
    server_started_at: str


@dataclass(slots=True)
class ModelStreamCompleted(BaseEvent):
    run_id: str
    model_id: str
    inference_time_ms: int
    output_chars: int
    reasoning_chars: int = 0
    input_tokens: int | None = None
    output_tokens: int | None = None


@dataclass(slots=True)
class ModelStreamFailed(BaseEvent):
    run_id: str
    model_id: str
    error_type: str
    message: str | None = None


@dataclass(slots=True)
class ModelStreamCancelled(BaseEvent):
    """Model aborted mid-flight.

    reason: user_cancel|disconnect|timeout|aggregation_error
    """
    run_id: str
    model_id: str
    reason: str


@dataclass(slots=True)
class CompareRunFinished(BaseEvent):
    run_id: str
    status: str  # completed|canceled|failed
    duration_ms: int
    outcomes: dict | None = None  # model_id -> result status


@dataclass(slots=True)
class CancelRequested(BaseEvent):
    run_id: str
    model_id: str | None
    canceled_streams: int


@dataclass(slots=True)
class StaleHandlesSwept(BaseEvent):
    removed: int
    max_age_s: float


@dataclass(slots=True)
class PersistenceFailed(BaseEvent):
    """Durable copy lags the live stream; surfaced for monitoring."""
    op: str
    run_id: str
    model_id: str | None = None
    message: str | None = None


class EventBus:
    def __init__(self) -> None:
        self._named: Dict[str, List[NamedHandler]] = {}
        self._any: List[EventHandler] = []
        self._lock = RLock()

    def on(self, handler: EventHandler) -> None:
        with self._lock:
            self._any.append(handler)

    def off(self, handler: EventHandler) -> None:
        with self._lock:
            try:
                self._any.remove(handler)
            except ValueError:
                pass

    def subscribe_named(self, event: str, handler: NamedHandler) -> None:
        with self._lock:
            self._named.setdefault(event, []).append(handler)

    def emit(self, name: str, payload: Dict[str, Any]) -> None:
        with self._lock:
            named = list(self._named.get(name, ()))
            anys = list(self._any)
        _metrics.inc("events_emitted_total", {"event": name})
        for h in named:
            try:
                h(dict(payload))
            except Exception:  # noqa: BLE001
                _metrics.inc("handler_exceptions_total", {"event": name})
        for h in anys:
            try:
                h(name, dict(payload))
            except Exception:  # noqa: BLE001
                _metrics.inc("handler_exceptions_total", {"event": name})

    def reset_for_tests(self) -> None:  # pragma: no cover
        with self._lock:
            self._named.clear()
            self._any.clear()


def _metrics_collector(
    name: str, payload: Dict[str, Any]
) -> None:  # noqa: D401
    if name == "CompareRunStarted":
        _metrics.inc("compare_runs_started_total")
    elif name == "CompareRunFinished":
        _metrics.inc(
            "compare_runs_finished_total",
            {"status": payload.get("status", "unknown")},
        )
        _metrics.observe(
            "compare_run_duration_ms", payload.get("duration_ms", 0)
        )
    elif name == "ModelStreamCompleted":
        _metrics.inc_model_outcome(payload.get("model_id"), "completed")
        _metrics.observe(
            "compare_inference_ms",
            payload.get("inference_time_ms", 0),
            {"model": payload.get("model_id")},
        )
    elif name == "ModelStreamFailed":
        _metrics.inc_model_outcome(payload.get("model_id"), "failed")
    elif name == "ModelStreamCancelled":
        _metrics.inc_model_outcome(payload.get("model_id"), "canceled")
        _metrics.inc(
            "compare_streams_canceled_total",
            {"path": payload.get("reason", "unknown")},
        )
    elif name == "StaleHandlesSwept":
        _metrics.inc("compare_registry_swept_total", value=payload["removed"])
    elif name == "PersistenceFailed":
        _metrics.inc_persistence_error(payload.get("op", "unknown"))


_BUS = EventBus()
_BUS.on(_metrics_collector)


def emit(ev: BaseEvent | SupportsEvent) -> None:
    _BUS.emit(ev.__class__.__name__, ev.to_event())


def on(handler: EventHandler) -> None:
    _BUS.on(handler)


def subscribe(handler: EventHandler):
    on(handler)

    def _unsub() -> None:  # noqa: D401
        _BUS.off(handler)
    return _unsub


def subscribe_named(event: str, handler: NamedHandler) -> None:
    _BUS.subscribe_named(event, handler)


def reset_listeners_for_tests() -> None:  # pragma: no cover
    _BUS.reset_for_tests()
    _BUS.on(_metrics_collector)


__all__ = [
    "emit",
    "on",
    "subscribe",
    "subscribe_named",
    "EventBus",
    "CompareRunStarted",
    "ModelStreamStarted",
    "ModelStreamCompleted",
    "ModelStreamFailed",
    "ModelStreamCancelled",
    "CompareRunFinished",
    "CancelRequested",
    "StaleHandlesSwept",
    "PersistenceFailed",
    "reset_listeners_for_tests",
]
