"""Compare run persistence contract + in-memory backend.

Terminal writes are conditional (compare-and-set on a non-terminal row):
whichever of the owning model task or the cancel path reaches the row
first wins, the other gets ``False`` and must treat its transition as a
no-op. Rows are never deleted here.

Listing is ascending by ``created_at`` with an exclusive cursor (the
``createdAt`` of the last item of the previous page) and a ``limit + 1``
probe for ``has_more``.
"""
from __future__ import annotations

import asyncio
from dataclasses import replace
from datetime import datetime
from typing import Dict, List, Protocol, Tuple

from .models import (
    CompareResult,
    CompareRun,
    ResultStatus,
    RunPage,
    RunStatus,
    cursor_for,
    parse_iso,
)

DEFAULT_PAGE_LIMIT = 50
MAX_PAGE_LIMIT = 100


class CompareStore(Protocol):
    async def open(self) -> None: ...

    async def close(self) -> None: ...

    async def create_run(
        self, run: CompareRun, results: List[CompareResult]
    ) -> None: ...

    async def get_run(self, run_id: str) -> CompareRun | None: ...

    async def get_results(self, run_id: str) -> List[CompareResult]: ...

    async def start_result(
        self, run_id: str, model_id: str, started_at: datetime
    ) -> bool: ...

    async def finish_result(self, result: CompareResult) -> bool: ...

    async def cancel_results(
        self, run_id: str, model_ids: List[str] | None, at: datetime
    ) -> List[str]: ...

    async def finish_run(
        self, run_id: str, status: RunStatus, at: datetime
    ) -> bool: ...

    async def list_runs(
        self,
        chat_id: str,
        user_id: str | None = None,
        limit: int = DEFAULT_PAGE_LIMIT,
        cursor: str | None = None,
    ) -> RunPage: ...


def clamp_limit(limit: int | None) -> int:
    if not limit or limit <= 0:
        return DEFAULT_PAGE_LIMIT
    return min(limit, MAX_PAGE_LIMIT)


class InMemoryCompareStore:
    def __init__(self) -> None:
        self._runs: Dict[str, CompareRun] = {}
        self._results: Dict[Tuple[str, str], CompareResult] = {}
        self._lock = asyncio.Lock()

    async def open(self) -> None:
        return None

    async def close(self) -> None:
        return None

    async def create_run(
        self, run: CompareRun, results: List[CompareResult]
    ) -> None:
        async with self._lock:
            self._runs[run.id] = replace(run, model_ids=list(run.model_ids))
            for r in results:
                self._results[(r.run_id, r.model_id)] = replace(r)

    async def get_run(self, run_id: str) -> CompareRun | None:
        run = self._runs.get(run_id)
        return replace(run, model_ids=list(run.model_ids)) if run else None

    async def get_results(self, run_id: str) -> List[CompareResult]:
        run = self._runs.get(run_id)
        if run is None:
            return []
        return [
            replace(self._results[(run_id, mid)])
            for mid in run.model_ids
            if (run_id, mid) in self._results
        ]

    async def start_result(
        self, run_id: str, model_id: str, started_at: datetime
    ) -> bool:
        async with self._lock:
            row = self._results.get((run_id, model_id))
            if row is None or row.status is not ResultStatus.PENDING:
                return False
            row.status = ResultStatus.RUNNING
            row.server_started_at = started_at
            return True

    async def finish_result(self, result: CompareResult) -> bool:
        async with self._lock:
            key = (result.run_id, result.model_id)
            row = self._results.get(key)
            if row is None or row.terminal:
                return False
            self._results[key] = replace(result)
            return True

    async def cancel_results(
        self, run_id: str, model_ids: List[str] | None, at: datetime
    ) -> List[str]:
        canceled: List[str] = []
        async with self._lock:
            for (rid, mid), row in self._results.items():
                if rid != run_id:
                    continue
                if model_ids is not None and mid not in model_ids:
                    continue
                if row.terminal:
                    continue
                row.status = ResultStatus.CANCELED
                row.completed_at = at
                canceled.append(mid)
        return canceled

    async def finish_run(
        self, run_id: str, status: RunStatus, at: datetime
    ) -> bool:
        async with self._lock:
            run = self._runs.get(run_id)
            if run is None or run.terminal:
                return False
            run.status = status
            run.updated_at = at
            return True

    async def list_runs(
        self,
        chat_id: str,
        user_id: str | None = None,
        limit: int = DEFAULT_PAGE_LIMIT,
        cursor: str | None = None,
    ) -> RunPage:
        limit = clamp_limit(limit)
        after = parse_iso(cursor)
        runs = sorted(
            (
                r
                for r in self._runs.values()
                if r.chat_id == chat_id
                and (user_id is None or r.user_id == user_id)
                and (after is None or r.created_at > after)
            ),
            key=lambda r: r.created_at,
        )
        probe = runs[: limit + 1]
        has_more = len(probe) > limit
        page = probe[:limit]
        items = [
            (
                replace(r, model_ids=list(r.model_ids)),
                await self.get_results(r.id),
            )
            for r in page
        ]
        next_cursor = (
            cursor_for(page[-1].created_at) if has_more and page else None
        )
        return RunPage(items=items, next_cursor=next_cursor, has_more=has_more)


__all__ = [
    "CompareStore",
    "InMemoryCompareStore",
    "DEFAULT_PAGE_LIMIT",
    "MAX_PAGE_LIMIT",
    "clamp_limit",
]
