"""Compare orchestration schema (fan-out limits, stream timing)."""
from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field, field_validator


DEFAULT_SYSTEM_PROMPT = (
    "You are a friendly assistant. Keep your responses concise and helpful."
)


class CompareConfig(BaseModel):
    max_models: int = 3
    # most recent chat turns shared by every model of a run
    history_limit: int = Field(24, gt=0)
    heartbeat_interval_s: float = Field(10.0, gt=0)
    # hard wall-clock ceiling for one compare request
    request_timeout_s: float = Field(60.0, gt=0)
    sweep_interval_s: float = Field(300.0, gt=0)
    stale_handle_max_age_s: float = Field(300.0, gt=0)
    queue_max_events: int = Field(256, gt=0)
    system_prompt: str = DEFAULT_SYSTEM_PROMPT

    model_config = ConfigDict(extra="forbid")

    @field_validator("max_models")
    @classmethod
    def _max_models_range(cls, v: int) -> int:  # noqa: D401
        if not (1 <= v <= 3):
            raise ValueError("max_models out of range 1..3")
        return v
