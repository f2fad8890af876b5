"""Process-wide service graph + request dependencies.

``build_container`` wires one instance of every collaborator from the
aggregated config; the app factory stores it on ``app.state`` and routes
reach it through ``get_container``. Tests pass their own container (fake
provider, in-memory stores).
"""
from __future__ import annotations

import logging
from dataclasses import dataclass

from fastapi import Header, Request

from core.compare.cancellation import CancellationService
from core.compare.chats import ChatRepository, InMemoryChatRepository
from core.compare.multiplexer import CompareMultiplexer
from core.compare.registry import StreamControllerRegistry
from core.compare.service import CompareService
from core.compare.sqlite_store import SqliteCompareStore
from core.compare.state import RunStateMachine
from core.compare.store import CompareStore, InMemoryCompareStore
from core.compare.usage import (
    Entitlements,
    InMemoryUsageLedger,
    Principal,
    UsageLedger,
    UsageService,
)
from core.config import AggregatedConfig
from core.errors import CompareError
from core.llm.factory import build_invoker, build_provider
from core.llm.provider import ModelProvider

log = logging.getLogger("compare.api")


@dataclass(slots=True)
class Container:
    config: AggregatedConfig
    provider: ModelProvider
    store: CompareStore
    chats: ChatRepository
    ledger: UsageLedger
    registry: StreamControllerRegistry
    state: RunStateMachine
    usage: UsageService
    multiplexer: CompareMultiplexer
    cancellation: CancellationService
    service: CompareService


def build_store(cfg: AggregatedConfig) -> CompareStore:
    if cfg.storage.backend == "sqlite":
        return SqliteCompareStore(cfg.storage.sqlite_path)
    return InMemoryCompareStore()


def build_container(
    cfg: AggregatedConfig,
    *,
    provider: ModelProvider | None = None,
    store: CompareStore | None = None,
    chats: ChatRepository | None = None,
    ledger: UsageLedger | None = None,
) -> Container:
    provider = provider or build_provider(cfg)
    store = store or build_store(cfg)
    chats = chats or InMemoryChatRepository()
    ledger = ledger or InMemoryUsageLedger()
    registry = StreamControllerRegistry()
    state = RunStateMachine(store)
    usage = UsageService(ledger, Entitlements(cfg.plans))
    multiplexer = CompareMultiplexer(
        state=state,
        registry=registry,
        invoker=build_invoker(cfg, provider),
        usage=usage,
        heartbeat_interval_s=cfg.compare.heartbeat_interval_s,
        request_timeout_s=cfg.compare.request_timeout_s,
        queue_max_events=cfg.compare.queue_max_events,
    )
    service = CompareService(
        config=cfg.compare,
        store=store,
        state=state,
        chats=chats,
        usage=usage,
        multiplexer=multiplexer,
    )
    log.info(
        "container built storage=%s models=%d",
        cfg.storage.backend,
        len(cfg.gateway.models),
    )
    return Container(
        config=cfg,
        provider=provider,
        store=store,
        chats=chats,
        ledger=ledger,
        registry=registry,
        state=state,
        usage=usage,
        multiplexer=multiplexer,
        cancellation=CancellationService(registry, state),
        service=service,
    )


def get_container(request: Request) -> Container:
    return request.app.state.container


def get_principal(
    x_user_id: str | None = Header(default=None, alias="X-User-Id"),
    x_user_plan: str | None = Header(default=None, alias="X-User-Plan"),
) -> Principal:
    """Caller identity as forwarded by the auth proxy in front of the API."""
    if not x_user_id or not x_user_id.strip():
        raise CompareError("unauthorized:auth", "Authentication required")
    return Principal(
        user_id=x_user_id.strip(),
        plan=(x_user_plan or "free").strip() or "free",
    )


__all__ = [
    "Container",
    "build_container",
    "build_store",
    "get_container",
    "get_principal",
]
