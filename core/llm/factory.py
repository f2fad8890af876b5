"""Provider / invoker construction from the aggregated config.

``build_provider`` reads the gateway API key from the env var named by
``gateway.api_key_env`` (never from YAML). ``list_models`` exposes the
catalog for the ``/models`` endpoint.
"""
from __future__ import annotations

import logging
import os
from typing import List

from core.config import AggregatedConfig

from .gateway_provider import GatewayProvider
from .invocation import ModelInvoker
from .provider import ModelInfo, ModelProvider

log = logging.getLogger("gateway.provider")


def build_provider(cfg: AggregatedConfig) -> ModelProvider:  # noqa: D401
    gw = cfg.gateway
    api_key = os.getenv(gw.api_key_env)
    if not api_key:
        log.warning(
            "gateway api key env %s not set; requests will be anonymous",
            gw.api_key_env,
        )
    return GatewayProvider(
        base_url=gw.base_url,
        api_key=api_key,
        timeout_s=gw.timeout_s,
        catalog=gw.models,
    )


def build_invoker(
    cfg: AggregatedConfig, provider: ModelProvider
) -> ModelInvoker:  # noqa: D401
    gw = cfg.gateway
    return ModelInvoker(
        provider,
        reasoning_models=[
            mid for mid, m in gw.models.items() if m.supports_reasoning
        ],
        reasoning_tag=gw.reasoning_tag,
        history_limit=cfg.compare.history_limit,
    )


def list_models(cfg: AggregatedConfig) -> List[ModelInfo]:
    return [
        ModelInfo(id=mid, supports_reasoning=m.supports_reasoning)
        for mid, m in cfg.gateway.models.items()
    ]
