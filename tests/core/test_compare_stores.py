import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from core.compare.models import (
    CompareResult,
    CompareRun,
    ResultStatus,
    RunStatus,
)
from core.compare.sqlite_store import SqliteCompareStore
from core.compare.store import InMemoryCompareStore, clamp_limit
from core.llm.types import TokenUsage

T0 = datetime(2026, 5, 1, 9, 30, tzinfo=timezone.utc)


@pytest.fixture(params=["memory", "sqlite"])
def make_store(request, tmp_path):
    def _make():
        if request.param == "memory":
            return InMemoryCompareStore()
        return SqliteCompareStore(tmp_path / "db" / "compare.db")

    return _make


def _run(i, chat="c1", user="u1", models=("alpha", "beta")):
    created = T0 + timedelta(microseconds=1500 * i)
    return CompareRun(
        id=f"run-{i:03d}",
        user_id=user,
        chat_id=chat,
        prompt=f"p{i}",
        model_ids=list(models),
        created_at=created,
        updated_at=created,
    )


def _results(run):
    return [
        CompareResult(run_id=run.id, model_id=m, created_at=run.created_at)
        for m in run.model_ids
    ]


def _with_store(make_store, body):
    async def _main():
        store = make_store()
        await store.open()
        try:
            return await body(store)
        finally:
            await store.close()

    return asyncio.run(_main())


def test_create_and_read_back(make_store):
    async def body(store):
        run = _run(1, models=("beta", "alpha"))
        await store.create_run(run, _results(run))
        got = await store.get_run(run.id)
        assert got.model_ids == ["beta", "alpha"]
        assert got.status is RunStatus.RUNNING
        assert got.created_at == run.created_at
        rows = await store.get_results(run.id)
        # requested order preserved
        assert [r.model_id for r in rows] == ["beta", "alpha"]
        assert all(r.status is ResultStatus.PENDING for r in rows)
        assert await store.get_run("missing") is None
        assert await store.get_results("missing") == []

    _with_store(make_store, body)


def test_conditional_terminal_writes(make_store):
    async def body(store):
        run = _run(1)
        await store.create_run(run, _results(run))
        assert await store.start_result(run.id, "alpha", T0) is True
        assert await store.start_result(run.id, "alpha", T0) is False
        done = CompareResult(
            run_id=run.id,
            model_id="alpha",
            status=ResultStatus.COMPLETED,
            content="answer",
            reasoning="why",
            usage=TokenUsage(10, 3),
            server_started_at=T0,
            server_completed_at=T0 + timedelta(seconds=2),
            inference_time_ms=2000,
            created_at=run.created_at,
            completed_at=T0 + timedelta(seconds=2),
        )
        assert await store.finish_result(done) is True
        # cancel after completion is a no-op on the row
        assert await store.cancel_results(run.id, None, T0) == ["beta"]
        late = CompareResult(
            run_id=run.id, model_id="alpha", status=ResultStatus.FAILED
        )
        assert await store.finish_result(late) is False
        rows = {r.model_id: r for r in await store.get_results(run.id)}
        assert rows["alpha"].status is ResultStatus.COMPLETED
        assert rows["alpha"].usage == TokenUsage(10, 3)
        assert rows["alpha"].inference_time_ms == 2000
        assert rows["alpha"].reasoning == "why"
        assert rows["beta"].status is ResultStatus.CANCELED
        assert await store.finish_run(run.id, RunStatus.COMPLETED, T0) is True
        assert await store.finish_run(run.id, RunStatus.CANCELED, T0) is False
        assert (await store.get_run(run.id)).status is RunStatus.COMPLETED

    _with_store(make_store, body)


def test_pagination_cursor_no_gaps_no_duplicates(make_store):
    async def body(store):
        for i in range(7):
            run = _run(i)
            await store.create_run(run, _results(run))
        other = _run(50, user="u2")
        await store.create_run(other, _results(other))
        await store.create_run(_run(60, chat="c2"), [])
        seen, cursor, pages = [], None, 0
        while True:
            page = await store.list_runs("c1", "u1", limit=3, cursor=cursor)
            pages += 1
            seen.extend(run.id for run, _ in page.items)
            if not page.has_more:
                assert page.next_cursor is None
                break
            cursor = page.next_cursor
        assert pages == 3
        assert seen == [f"run-{i:03d}" for i in range(7)]
        first = await store.list_runs("c1", "u1", limit=3)
        run, results = first.items[0]
        assert [r.model_id for r in results] == ["alpha", "beta"]
        wire = first.to_wire()
        assert wire["hasMore"] is True
        assert wire["items"][0]["results"][0]["status"] == "pending"

    _with_store(make_store, body)


def test_clamp_limit():
    assert clamp_limit(None) == 50
    assert clamp_limit(0) == 50
    assert clamp_limit(7) == 7
    assert clamp_limit(1000) == 100


def test_sqlite_persists_across_reopen(tmp_path):
    path = tmp_path / "compare.db"

    async def _main():
        store = SqliteCompareStore(path)
        await store.open()
        run = _run(1)
        await store.create_run(run, _results(run))
        await store.close()
        again = SqliteCompareStore(path)
        await again.open()
        try:
            return await again.get_run(run.id)
        finally:
            await again.close()

    got = asyncio.run(_main())
    assert got is not None and got.prompt == "p1"


def test_cursor_without_offset_is_read_as_utc(make_store):
    async def body(store):
        for i in range(3):
            run = _run(i)
            await store.create_run(run, _results(run))
        naive = (T0 + timedelta(microseconds=1500)).replace(tzinfo=None)
        page = await store.list_runs(
            "c1", "u1", limit=10, cursor=naive.isoformat()
        )
        assert [run.id for run, _ in page.items] == ["run-002"]

    _with_store(make_store, body)
