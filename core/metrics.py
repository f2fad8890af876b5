"""Minimal in-memory metrics collector.

Purpose:
    - Counters and simple latency samples for compare stream health.
    - Zero external deps; can be swapped by a Prometheus exporter later.

Core API (intentionally tiny):
    inc(name, labels=None, value=1)
    observe(name, value, labels=None)
    snapshot() -> dict (copy for safe reading)

Thread-safety: coarse RLock; overhead negligible for low event volume.

Compare related metric names (documented for discoverability):
    - compare_runs_started_total
    - compare_runs_finished_total{status}
    - compare_model_outcome_total{model,status}
    - compare_first_delta_latency_ms{model}
    - compare_inference_ms{model}
    - compare_cancel_requests_total{scope}
    - compare_streams_canceled_total{path}
    - compare_registry_swept_total
    - compare_persistence_errors_total{op}
    - compare_rejected_total{code}
    - sse_streams_open_total / sse_streams_closed_total{reason}
    - sse_heartbeats_total
    - sse_dropped_deltas_total{model}
    - api_request_total{route,method} / api_request_latency_ms
"""
from __future__ import annotations

from threading import RLock
from time import time
from typing import Dict, Tuple, Any

_COUNTERS: Dict[Tuple[str, Tuple[Tuple[str, str], ...]], float] = {}
_HIST: Dict[Tuple[str, Tuple[Tuple[str, str], ...]], list] = {}
_LOCK = RLock()


def _norm_labels(labels: dict[str, Any] | None) -> Tuple[Tuple[str, str], ...]:
    if not labels:
        return tuple()
    return tuple(sorted((str(k), str(v)) for k, v in labels.items()))


def _label_str(labels: Tuple[Tuple[str, str], ...]) -> str:
    if not labels:
        return ""
    return "{" + ",".join(f"{k}={v}" for k, v in labels) + "}"


def inc(
    name: str,
    labels: dict[str, Any] | None = None,
    value: float = 1.0,
) -> None:
    key = (name, _norm_labels(labels))
    with _LOCK:
        _COUNTERS[key] = _COUNTERS.get(key, 0.0) + value


def observe(
    name: str,
    value: float,
    labels: dict[str, Any] | None = None,
) -> None:
    key = (name, _norm_labels(labels))
    with _LOCK:
        _HIST.setdefault(key, []).append(value)


def snapshot() -> dict[str, Any]:
    with _LOCK:
        counters = {
            name + _label_str(labels): v
            for (name, labels), v in _COUNTERS.items()
        }
        hist = {}
        for (name, labels), vals in _HIST.items():
            if not vals:
                continue
            ordered = sorted(vals)
            hist[name + _label_str(labels)] = {
                "count": len(vals),
                "min": ordered[0],
                "max": ordered[-1],
                "p50": ordered[len(ordered) // 2],
                "last": vals[-1],
            }
        return {"ts": time(), "counters": counters, "histograms": hist}


def counter(name: str, labels: dict[str, Any] | None = None) -> float:
    """Read a single counter value (0.0 if never incremented)."""
    with _LOCK:
        return _COUNTERS.get((name, _norm_labels(labels)), 0.0)


def reset_for_tests() -> None:  # pragma: no cover
    with _LOCK:
        _COUNTERS.clear()
        _HIST.clear()


__all__ = [
    "inc",
    "observe",
    "snapshot",
    "counter",
    "reset_for_tests",
]


# ------------------- Helper wrappers -------------------

def inc_model_outcome(model: str, status: str) -> None:
    """Increment per-model terminal outcome counter.

    status: completed|failed|canceled
    """
    inc("compare_model_outcome_total", {"model": model, "status": status})


def inc_persistence_error(op: str) -> None:
    """Count a swallowed store failure (op: create_run|start_result|...)."""
    if op:
        inc("compare_persistence_errors_total", {"op": op})


def inc_rejected(code: str) -> None:
    """Count a request rejected before streaming, by error code."""
    if code:
        inc("compare_rejected_total", {"code": code})


__all__ += ["inc_model_outcome", "inc_persistence_error", "inc_rejected"]
