"""SQLite backend for compare runs (aiosqlite, one shared connection).

Timestamps are stored as full-precision UTC ISO text so that ``created_at``
sorts lexically and doubles as the page cursor. Terminal writes are
``UPDATE ... WHERE status IN (non-terminal)``; ``rowcount`` tells whether
this writer won.
"""
from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import List

import aiosqlite

from core.errors import PersistenceError
from core.llm.types import TokenUsage

from .models import (
    CompareResult,
    CompareRun,
    ResultStatus,
    RunPage,
    RunStatus,
    cursor_for,
    parse_iso,
)
from .store import DEFAULT_PAGE_LIMIT, clamp_limit

log = logging.getLogger("compare.store")

SCHEMA = """
CREATE TABLE IF NOT EXISTS compare_runs (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    chat_id TEXT NOT NULL,
    prompt TEXT NOT NULL,
    model_ids TEXT NOT NULL,
    status TEXT NOT NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_compare_runs_chat
    ON compare_runs (chat_id, created_at);
CREATE TABLE IF NOT EXISTS compare_results (
    run_id TEXT NOT NULL REFERENCES compare_runs (id),
    model_id TEXT NOT NULL,
    status TEXT NOT NULL,
    content TEXT NOT NULL DEFAULT '',
    reasoning TEXT NOT NULL DEFAULT '',
    usage TEXT,
    error TEXT,
    server_started_at TEXT,
    server_completed_at TEXT,
    inference_time_ms INTEGER,
    created_at TEXT NOT NULL,
    completed_at TEXT,
    PRIMARY KEY (run_id, model_id)
);
"""

_OPEN_STATUSES = (ResultStatus.PENDING.value, ResultStatus.RUNNING.value)


def _ts(dt) -> str | None:
    return cursor_for(dt) if dt is not None else None


def _run_from_row(row) -> CompareRun:
    return CompareRun(
        id=row["id"],
        user_id=row["user_id"],
        chat_id=row["chat_id"],
        prompt=row["prompt"],
        model_ids=json.loads(row["model_ids"]),
        status=RunStatus(row["status"]),
        created_at=parse_iso(row["created_at"]),
        updated_at=parse_iso(row["updated_at"]),
    )


def _result_from_row(row) -> CompareResult:
    usage = json.loads(row["usage"]) if row["usage"] else None
    return CompareResult(
        run_id=row["run_id"],
        model_id=row["model_id"],
        status=ResultStatus(row["status"]),
        content=row["content"] or "",
        reasoning=row["reasoning"] or "",
        usage=TokenUsage.from_wire(usage),
        error=row["error"],
        server_started_at=parse_iso(row["server_started_at"]),
        server_completed_at=parse_iso(row["server_completed_at"]),
        inference_time_ms=row["inference_time_ms"],
        created_at=parse_iso(row["created_at"]),
        completed_at=parse_iso(row["completed_at"]),
    )


class SqliteCompareStore:
    def __init__(self, path: str | Path) -> None:
        self.path = str(path)
        self._db: aiosqlite.Connection | None = None

    @property
    def db(self) -> aiosqlite.Connection:
        if self._db is None:
            raise PersistenceError("sqlite store is not open")
        return self._db

    async def open(self) -> None:
        if self._db is not None:
            return
        if self.path != ":memory:":
            Path(self.path).parent.mkdir(parents=True, exist_ok=True)
        db = await aiosqlite.connect(self.path)
        db.row_factory = aiosqlite.Row
        await db.execute("PRAGMA journal_mode=WAL")
        await db.execute("PRAGMA foreign_keys=ON")
        await db.execute("PRAGMA busy_timeout=5000")
        await db.executescript(SCHEMA)
        await db.commit()
        self._db = db
        log.info("sqlite compare store opened path=%s", self.path)

    async def close(self) -> None:
        if self._db is not None:
            await self._db.close()
            self._db = None

    async def create_run(
        self, run: CompareRun, results: List[CompareResult]
    ) -> None:
        db = self.db
        await db.execute(
            "INSERT INTO compare_runs (id, user_id, chat_id, prompt,"
            " model_ids, status, created_at, updated_at)"
            " VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
            (
                run.id,
                run.user_id,
                run.chat_id,
                run.prompt,
                json.dumps(list(run.model_ids)),
                run.status.value,
                _ts(run.created_at),
                _ts(run.updated_at),
            ),
        )
        await db.executemany(
            "INSERT INTO compare_results (run_id, model_id, status,"
            " created_at) VALUES (?, ?, ?, ?)",
            [
                (r.run_id, r.model_id, r.status.value, _ts(r.created_at))
                for r in results
            ],
        )
        await db.commit()

    async def get_run(self, run_id: str) -> CompareRun | None:
        async with self.db.execute(
            "SELECT * FROM compare_runs WHERE id = ?", (run_id,)
        ) as cur:
            row = await cur.fetchone()
        return _run_from_row(row) if row else None

    async def get_results(self, run_id: str) -> List[CompareResult]:
        run = await self.get_run(run_id)
        if run is None:
            return []
        async with self.db.execute(
            "SELECT * FROM compare_results WHERE run_id = ?", (run_id,)
        ) as cur:
            rows = {r["model_id"]: r for r in await cur.fetchall()}
        # requested model order, not insertion order
        return [_result_from_row(rows[m]) for m in run.model_ids if m in rows]

    async def start_result(self, run_id, model_id, started_at) -> bool:
        cur = await self.db.execute(
            "UPDATE compare_results SET status = ?, server_started_at = ?"
            " WHERE run_id = ? AND model_id = ? AND status = ?",
            (
                ResultStatus.RUNNING.value,
                _ts(started_at),
                run_id,
                model_id,
                ResultStatus.PENDING.value,
            ),
        )
        await self.db.commit()
        return cur.rowcount == 1

    async def finish_result(self, result: CompareResult) -> bool:
        cur = await self.db.execute(
            "UPDATE compare_results SET status = ?, content = ?,"
            " reasoning = ?, usage = ?, error = ?, server_started_at = ?,"
            " server_completed_at = ?, inference_time_ms = ?,"
            " completed_at = ?"
            " WHERE run_id = ? AND model_id = ? AND status IN (?, ?)",
            (
                result.status.value,
                result.content,
                result.reasoning,
                json.dumps(result.usage.to_wire()) if result.usage else None,
                result.error,
                _ts(result.server_started_at),
                _ts(result.server_completed_at),
                result.inference_time_ms,
                _ts(result.completed_at),
                result.run_id,
                result.model_id,
                *_OPEN_STATUSES,
            ),
        )
        await self.db.commit()
        return cur.rowcount == 1

    async def cancel_results(self, run_id, model_ids, at) -> List[str]:
        async with self.db.execute(
            "SELECT model_id FROM compare_results"
            " WHERE run_id = ? AND status IN (?, ?)",
            (run_id, *_OPEN_STATUSES),
        ) as cur:
            candidates = [r["model_id"] for r in await cur.fetchall()]
        canceled: List[str] = []
        for model_id in candidates:
            if model_ids is not None and model_id not in model_ids:
                continue
            upd = await self.db.execute(
                "UPDATE compare_results SET status = ?, completed_at = ?"
                " WHERE run_id = ? AND model_id = ? AND status IN (?, ?)",
                (
                    ResultStatus.CANCELED.value,
                    _ts(at),
                    run_id,
                    model_id,
                    *_OPEN_STATUSES,
                ),
            )
            if upd.rowcount == 1:
                canceled.append(model_id)
        await self.db.commit()
        return canceled

    async def finish_run(self, run_id, status: RunStatus, at) -> bool:
        cur = await self.db.execute(
            "UPDATE compare_runs SET status = ?, updated_at = ?"
            " WHERE id = ? AND status = ?",
            (status.value, _ts(at), run_id, RunStatus.RUNNING.value),
        )
        await self.db.commit()
        return cur.rowcount == 1

    async def list_runs(
        self,
        chat_id: str,
        user_id: str | None = None,
        limit: int = DEFAULT_PAGE_LIMIT,
        cursor: str | None = None,
    ) -> RunPage:
        limit = clamp_limit(limit)
        sql = "SELECT * FROM compare_runs WHERE chat_id = ?"
        params: list = [chat_id]
        if user_id is not None:
            sql += " AND user_id = ?"
            params.append(user_id)
        after = parse_iso(cursor)
        if after is not None:
            sql += " AND created_at > ?"
            params.append(cursor_for(after))
        sql += " ORDER BY created_at ASC LIMIT ?"
        params.append(limit + 1)
        async with self.db.execute(sql, params) as cur:
            rows = await cur.fetchall()
        has_more = len(rows) > limit
        page = [_run_from_row(r) for r in rows[:limit]]
        items = [(run, await self.get_results(run.id)) for run in page]
        next_cursor = (
            cursor_for(page[-1].created_at) if has_more and page else None
        )
        return RunPage(items=items, next_cursor=next_cursor, has_more=has_more)


__all__ = ["SqliteCompareStore", "SCHEMA"]
