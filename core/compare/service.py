"""Compare request orchestration: validation, run creation, reads.

Every rejection happens in ``prepare`` before any stream opens and before
any row is written: model count and uniqueness, quota, plan allow-list,
chat ownership. Only then is the run created (or a supplied run id
reused) and the shared context history loaded.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import AsyncIterator, List, Tuple

from core import metrics
from core.config.schemas.compare import CompareConfig
from core.errors import CompareError, NotFoundError
from core.events import CompareRunStarted, emit
from core.llm.types import ChatTurn

from .chats import Chat, ChatRepository, title_from_prompt
from .models import (
    CompareResult,
    CompareRun,
    ResultStatus,
    RunPage,
    parse_iso,
)
from .multiplexer import CompareContext, CompareMultiplexer
from .state import RunStateMachine
from .store import CompareStore, clamp_limit
from .usage import Principal, UsageService
from .wire import StreamEvent

log = logging.getLogger("compare.service")


@dataclass(slots=True)
class CompareRequest:
    chat_id: str
    prompt: str
    model_ids: List[str] = field(default_factory=list)
    run_id: str | None = None


class CompareService:
    def __init__(
        self,
        *,
        config: CompareConfig,
        store: CompareStore,
        state: RunStateMachine,
        chats: ChatRepository,
        usage: UsageService,
        multiplexer: CompareMultiplexer,
    ) -> None:
        self.config = config
        self.store = store
        self.state = state
        self.chats = chats
        self.usage = usage
        self.multiplexer = multiplexer

    # ------------------------------------------------------------- stream
    async def prepare(
        self, principal: Principal, req: CompareRequest
    ) -> CompareContext:
        try:
            return await self._prepare(principal, req)
        except CompareError as e:
            metrics.inc_rejected(e.code)
            raise

    async def _prepare(
        self, principal: Principal, req: CompareRequest
    ) -> CompareContext:
        model_ids = list(req.model_ids)
        limit = self.config.max_models
        if not model_ids or len(model_ids) > limit:
            raise CompareError(
                "bad_request:api",
                f"Maximum {limit} models allowed for comparison",
            )
        if len(set(model_ids)) != len(model_ids):
            raise CompareError(
                "bad_request:api", "Model ids must be unique"
            )
        await self.usage.check_quota(principal, len(model_ids))
        denied = self.usage.entitlements.denied(principal.plan, model_ids)
        if denied:
            raise CompareError(
                "forbidden:model",
                f"Access denied to models: {', '.join(denied)}",
            )
        await self._ensure_chat(principal, req.chat_id, req.prompt)
        run = await self._create_or_reuse(principal, req, model_ids)
        history = await self._history(req.chat_id)
        emit(
            CompareRunStarted(
                run_id=run.id,
                chat_id=run.chat_id,
                user_id=principal.user_id,
                model_ids=list(run.model_ids),
                reused=req.run_id is not None,
            )
        )
        return CompareContext(
            run=run,
            user_id=principal.user_id,
            prompt=req.prompt,
            system=self.config.system_prompt,
            history=history,
        )

    def stream(self, ctx: CompareContext) -> AsyncIterator[StreamEvent]:
        return self.multiplexer.stream(ctx)

    async def _ensure_chat(
        self, principal: Principal, chat_id: str, prompt: str
    ) -> Chat:
        chat = await self.chats.get_chat(chat_id)
        if chat is None:
            chat = Chat(
                id=chat_id,
                user_id=principal.user_id,
                title=title_from_prompt(prompt),
            )
            await self.chats.save_chat(chat)
            log.info("created chat %s for compare run", chat_id)
            return chat
        if chat.user_id != principal.user_id:
            raise CompareError("forbidden:chat", "Access denied to chat")
        return chat

    async def _create_or_reuse(
        self, principal: Principal, req: CompareRequest, model_ids: List[str]
    ) -> CompareRun:
        existing = None
        if req.run_id is not None:
            existing = await self._read(self.store.get_run(req.run_id))
        if existing is None:
            try:
                return await self.state.create_run(
                    principal.user_id,
                    req.chat_id,
                    req.prompt,
                    model_ids,
                    run_id=req.run_id,
                )
            except Exception as e:  # noqa: BLE001
                log.exception("create_run failed chat=%s", req.chat_id)
                raise CompareError(
                    "bad_request:database", "Failed to create compare run"
                ) from e
        if existing.user_id != principal.user_id:
            raise CompareError("forbidden:compare", "Access denied")
        results = await self._read(self.store.get_results(existing.id))
        reusable = (
            existing.chat_id == req.chat_id
            and not existing.terminal
            and existing.model_ids == model_ids
            and all(r.status is ResultStatus.PENDING for r in results)
        )
        # check + adopt without a suspension point in between
        if not reusable or self.state.run(existing.id) is not None:
            raise CompareError(
                "bad_request:compare",
                "Compare run cannot be restarted",
                cause="a run id can only be reused before it started",
            )
        return self.state.adopt_run(existing, results)

    async def _history(self, chat_id: str) -> List[ChatTurn]:
        try:
            turns = await self.chats.get_messages(chat_id)
        except Exception:  # noqa: BLE001
            log.warning(
                "failed to load prior messages for chat %s",
                chat_id,
                exc_info=True,
            )
            return []
        return list(turns)[-self.config.history_limit:]

    # -------------------------------------------------------------- reads
    async def _read(self, aw):
        try:
            return await aw
        except CompareError:
            raise
        except Exception as e:  # noqa: BLE001
            log.exception("compare store read failed")
            raise CompareError(
                "bad_request:database", "Failed to read compare runs"
            ) from e

    async def authorize_run(
        self, principal: Principal, run_id: str
    ) -> CompareRun:
        run = await self._read(self.store.get_run(run_id))
        if run is None:
            raise NotFoundError("Compare run not found")
        if run.user_id != principal.user_id:
            raise CompareError("forbidden:compare", "Access denied")
        return run

    async def get_run(
        self, principal: Principal, run_id: str
    ) -> Tuple[CompareRun, List[CompareResult]]:
        run = await self.authorize_run(principal, run_id)
        results = await self._read(self.store.get_results(run_id))
        return run, results

    async def list_runs(
        self,
        principal: Principal,
        chat_id: str,
        limit: int | None = None,
        cursor: str | None = None,
    ) -> RunPage:
        if cursor:
            try:
                parse_iso(cursor)
            except ValueError as e:
                raise CompareError("bad_request:api", "Invalid cursor") from e
        return await self._read(
            self.store.list_runs(
                chat_id,
                user_id=principal.user_id,
                limit=clamp_limit(limit),
                cursor=cursor,
            )
        )


__all__ = ["CompareService", "CompareRequest"]
