"""Compare run / result records and their camelCase wire form."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List

from core.llm.types import TokenUsage


class RunStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    CANCELED = "canceled"
    FAILED = "failed"


class ResultStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    CANCELED = "canceled"
    FAILED = "failed"


TERMINAL_RESULT_STATUSES = frozenset(
    {ResultStatus.COMPLETED, ResultStatus.CANCELED, ResultStatus.FAILED}
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def iso(dt: datetime | None) -> str | None:
    if dt is None:
        return None
    return dt.astimezone(timezone.utc).isoformat(
        timespec="milliseconds"
    ).replace("+00:00", "Z")


def cursor_for(dt: datetime) -> str:
    """Full-precision UTC timestamp used as an exclusive page cursor."""
    return dt.astimezone(timezone.utc).isoformat(
        timespec="microseconds"
    ).replace("+00:00", "Z")


def parse_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    # timestamps without an offset are UTC
    return dt if dt.tzinfo is not None else dt.replace(tzinfo=timezone.utc)


@dataclass(slots=True)
class CompareRun:
    id: str
    user_id: str
    chat_id: str
    prompt: str
    model_ids: List[str]
    status: RunStatus = RunStatus.RUNNING
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def terminal(self) -> bool:
        return self.status is not RunStatus.RUNNING

    def to_wire(self) -> Dict[str, Any]:  # noqa: D401
        return {
            "id": self.id,
            "userId": self.user_id,
            "chatId": self.chat_id,
            "prompt": self.prompt,
            "modelIds": list(self.model_ids),
            "status": self.status.value,
            "createdAt": iso(self.created_at),
            "updatedAt": iso(self.updated_at),
        }


@dataclass(slots=True)
class CompareResult:
    run_id: str
    model_id: str
    status: ResultStatus = ResultStatus.PENDING
    content: str = ""
    reasoning: str = ""
    usage: TokenUsage | None = None
    error: str | None = None
    server_started_at: datetime | None = None
    server_completed_at: datetime | None = None
    inference_time_ms: int | None = None
    created_at: datetime = field(default_factory=utcnow)
    completed_at: datetime | None = None

    @property
    def terminal(self) -> bool:
        return self.status in TERMINAL_RESULT_STATUSES

    def to_wire(self) -> Dict[str, Any]:  # noqa: D401
        return {
            "runId": self.run_id,
            "modelId": self.model_id,
            "status": self.status.value,
            "content": self.content,
            "reasoning": self.reasoning,
            "usage": self.usage.to_wire() if self.usage else None,
            "error": self.error,
            "serverStartedAt": iso(self.server_started_at),
            "serverCompletedAt": iso(self.server_completed_at),
            "inferenceTimeMs": self.inference_time_ms,
            "createdAt": iso(self.created_at),
            "completedAt": iso(self.completed_at),
        }


@dataclass(slots=True)
class RunPage:
    """One page of runs (each with its results), ascending by creation."""
    items: List[tuple[CompareRun, List[CompareResult]]]
    next_cursor: str | None
    has_more: bool

    def to_wire(self) -> Dict[str, Any]:  # noqa: D401
        items = []
        for run, results in self.items:
            data = run.to_wire()
            data["results"] = [r.to_wire() for r in results]
            items.append(data)
        return {
            "items": items,
            "nextCursor": self.next_cursor,
            "hasMore": self.has_more,
        }


__all__ = [
    "RunStatus",
    "ResultStatus",
    "TERMINAL_RESULT_STATUSES",
    "CompareRun",
    "CompareResult",
    "RunPage",
    "utcnow",
    "iso",
    "cursor_for",
    "parse_iso",
]
