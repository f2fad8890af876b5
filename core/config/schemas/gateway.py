"""Hosted model gateway schema (OpenAI-compatible endpoint + catalog)."""
from __future__ import annotations

from typing import Dict

from pydantic import BaseModel, ConfigDict, Field


class GatewayModelConfig(BaseModel):
    supports_reasoning: bool = False
    # provider-side id when it differs from the public catalog id
    upstream_id: str | None = None

    model_config = ConfigDict(extra="forbid")


class GatewayConfig(BaseModel):
    base_url: str = "https://ai-gateway.vercel.sh/v1"
    api_key_env: str = "AI_GATEWAY_API_KEY"
    timeout_s: float = Field(55.0, gt=0)
    reasoning_tag: str = Field("thinking", pattern=r"^[A-Za-z_][\w-]*$")
    models: Dict[str, GatewayModelConfig] = Field(default_factory=dict)

    model_config = ConfigDict(extra="forbid")
