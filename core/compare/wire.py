"""SSE event variants for one compare stream on the wire.

Each variant carries only its own fields; ``to_wire`` produces the JSON
object sent in one ``data:`` frame.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Union

from core.llm.types import TokenUsage

from .models import iso


@dataclass(slots=True)
class RunStart:
    run_id: str
    chat_id: str
    models: List[str]

    def to_wire(self) -> Dict[str, Any]:  # noqa: D401
        return {
            "type": "run_start",
            "runId": self.run_id,
            "chatId": self.chat_id,
            "models": list(self.models),
        }


@dataclass(slots=True)
class ModelStart:
    run_id: str
    model_id: str
    server_started_at: Any  # datetime

    def to_wire(self) -> Dict[str, Any]:  # noqa: D401
        return {
            "type": "model_start",
            "runId": self.run_id,
            "modelId": self.model_id,
            "serverStartedAt": iso(self.server_started_at),
        }


@dataclass(slots=True)
class Delta:
    run_id: str
    model_id: str
    text_delta: str

    def to_wire(self) -> Dict[str, Any]:  # noqa: D401
        return {
            "type": "delta",
            "runId": self.run_id,
            "modelId": self.model_id,
            "textDelta": self.text_delta,
        }


@dataclass(slots=True)
class ReasoningDeltaEvent:
    run_id: str
    model_id: str
    reasoning_delta: str

    def to_wire(self) -> Dict[str, Any]:  # noqa: D401
        return {
            "type": "reasoning_delta",
            "runId": self.run_id,
            "modelId": self.model_id,
            "reasoningDelta": self.reasoning_delta,
        }


@dataclass(slots=True)
class ModelEnd:
    run_id: str
    model_id: str
    usage: TokenUsage | None
    server_started_at: Any
    server_completed_at: Any
    inference_time_ms: int

    def to_wire(self) -> Dict[str, Any]:  # noqa: D401
        return {
            "type": "model_end",
            "runId": self.run_id,
            "modelId": self.model_id,
            "usage": self.usage.to_wire() if self.usage else None,
            "serverStartedAt": iso(self.server_started_at),
            "serverCompletedAt": iso(self.server_completed_at),
            "inferenceTimeMs": self.inference_time_ms,
        }


@dataclass(slots=True)
class ModelError:
    run_id: str
    model_id: str
    error: str

    def to_wire(self) -> Dict[str, Any]:  # noqa: D401
        return {
            "type": "model_error",
            "runId": self.run_id,
            "modelId": self.model_id,
            "error": self.error,
        }


@dataclass(slots=True)
class RunEnd:
    run_id: str

    def to_wire(self) -> Dict[str, Any]:  # noqa: D401
        return {"type": "run_end", "runId": self.run_id}


@dataclass(slots=True)
class Heartbeat:
    def to_wire(self) -> Dict[str, Any]:  # noqa: D401
        return {"type": "heartbeat"}


StreamEvent = Union[
    RunStart,
    ModelStart,
    Delta,
    ReasoningDeltaEvent,
    ModelEnd,
    ModelError,
    RunEnd,
    Heartbeat,
]


__all__ = [
    "RunStart",
    "ModelStart",
    "Delta",
    "ReasoningDeltaEvent",
    "ModelEnd",
    "ModelError",
    "RunEnd",
    "Heartbeat",
    "StreamEvent",
]
