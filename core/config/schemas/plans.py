"""Plan tiers: quota window + model allow-list."""
from __future__ import annotations

from typing import Dict, List

from pydantic import BaseModel, ConfigDict, Field, RootModel


class PlanConfig(BaseModel):
    period: str = Field("daily", pattern="^(daily|monthly)$")
    quota: int = Field(20, ge=0)
    models: List[str] = Field(default_factory=list)

    model_config = ConfigDict(extra="forbid")


class PlansConfig(RootModel[Dict[str, PlanConfig]]):
    """Mapping plan name -> PlanConfig (``free``/``pro`` in base.yaml)."""

    def get(self, name: str) -> PlanConfig | None:
        return self.root.get(name)

    def names(self) -> list[str]:
        return list(self.root)
