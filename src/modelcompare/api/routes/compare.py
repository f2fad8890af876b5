"""/api/compare routes: stream, cancel, run detail, run list."""
from __future__ import annotations

import uuid
from typing import List

from fastapi import APIRouter, Depends, Query
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, ConfigDict, Field

from core.compare.service import CompareRequest
from core.compare.usage import Principal
from modelcompare.api.dependencies import (
    Container,
    get_container,
    get_principal,
)
from modelcompare.api.sse import SSE_HEADERS, sse_stream

router = APIRouter(prefix="/api/compare")


class CompareStreamBody(BaseModel):  # noqa: D401
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    chat_id: uuid.UUID = Field(alias="chatId")
    prompt: str = Field(min_length=1)
    # count and uniqueness are checked by the service
    model_ids: List[str] = Field(alias="modelIds")
    run_id: uuid.UUID | None = Field(default=None, alias="runId")


class CancelBody(BaseModel):  # noqa: D401
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    run_id: uuid.UUID = Field(alias="runId")
    model_id: str | None = Field(default=None, alias="modelId", min_length=1)


@router.post("/stream")
async def compare_stream(
    body: CompareStreamBody,
    principal: Principal = Depends(get_principal),
    c: Container = Depends(get_container),
):
    # every rejection surfaces here as JSON, before the first byte of SSE
    ctx = await c.service.prepare(
        principal,
        CompareRequest(
            chat_id=str(body.chat_id),
            prompt=body.prompt,
            model_ids=list(body.model_ids),
            run_id=str(body.run_id) if body.run_id else None,
        ),
    )
    return StreamingResponse(
        sse_stream(c.service.stream(ctx)),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
    )


@router.post("/cancel")
async def compare_cancel(
    body: CancelBody,
    principal: Principal = Depends(get_principal),
    c: Container = Depends(get_container),
):
    run = await c.service.authorize_run(principal, str(body.run_id))
    outcome = await c.cancellation.cancel(run.id, body.model_id)
    return outcome.to_wire()


@router.get("/{run_id}")
async def compare_get(
    run_id: uuid.UUID,
    principal: Principal = Depends(get_principal),
    c: Container = Depends(get_container),
):
    run, results = await c.service.get_run(principal, str(run_id))
    return {"run": run.to_wire(), "results": [r.to_wire() for r in results]}


@router.get("")
async def compare_list(
    chat_id: uuid.UUID = Query(alias="chatId"),
    limit: int | None = Query(default=None),
    cursor: str | None = Query(default=None),
    principal: Principal = Depends(get_principal),
    c: Container = Depends(get_container),
):
    page = await c.service.list_runs(
        principal, str(chat_id), limit=limit, cursor=cursor
    )
    return page.to_wire()


__all__ = ["router", "CompareStreamBody", "CancelBody"]
