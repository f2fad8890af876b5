"""Compare run storage backend selection."""
from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


class StorageConfig(BaseModel):
    backend: str = Field("memory", pattern="^(memory|sqlite)$")
    sqlite_path: str = "data/compare.db"

    model_config = ConfigDict(extra="forbid")
