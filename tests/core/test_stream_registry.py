import asyncio

from core.compare.registry import StreamControllerRegistry
from core.events import on
from core.llm.abort import AbortController


class _Clock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def test_cancel_single_model_is_idempotent():
    reg = StreamControllerRegistry()
    a, b = AbortController(), AbortController()
    reg.register("r1", "alpha", a)
    reg.register("r1", "beta", b)
    assert reg.cancel("r1", "alpha") == 1
    assert a.aborted and not b.aborted
    assert a.signal.reason == "user_cancel"
    # second cancel: handle already gone
    assert reg.cancel("r1", "alpha") == 0
    assert reg.active("r1") == [("r1", "beta")]


def test_cancel_run_aborts_every_model_of_that_run_only():
    reg = StreamControllerRegistry()
    ctrls = {m: AbortController() for m in ("alpha", "beta", "gamma")}
    for m, c in ctrls.items():
        reg.register("r1", m, c)
    other = AbortController()
    reg.register("r2", "alpha", other)
    assert reg.cancel("r1") == 3
    assert all(c.aborted for c in ctrls.values())
    assert not other.aborted
    assert reg.cancel("r1") == 0
    assert len(reg) == 1


def test_register_duplicate_last_write_wins():
    reg = StreamControllerRegistry()
    first, second = AbortController(), AbortController()
    reg.register("r1", "alpha", first)
    reg.register("r1", "alpha", second)
    assert reg.get("r1", "alpha").controller is second
    assert reg.cancel("r1", "alpha") == 1
    assert second.aborted and not first.aborted


def test_unregister_reports_presence():
    reg = StreamControllerRegistry()
    reg.register("r1", "alpha", AbortController())
    assert reg.unregister("r1", "alpha") is True
    assert reg.unregister("r1", "alpha") is False
    assert reg.cancel("r1", "alpha") == 0


def test_already_aborted_handle_not_counted():
    reg = StreamControllerRegistry()
    c = AbortController()
    reg.register("r1", "alpha", c)
    c.abort("elsewhere")
    assert reg.cancel("r1") == 0
    assert c.signal.reason == "elsewhere"


def test_sweep_removes_stale_and_emits():
    clock = _Clock()
    reg = StreamControllerRegistry(clock=clock)
    events = []
    on(lambda n, p: events.append((n, p)))
    reg.register("r1", "alpha", AbortController())
    clock.now += 200
    reg.register("r2", "beta", AbortController())
    clock.now += 150
    assert reg.sweep(max_age_s=300) == 1
    assert reg.active() == [("r2", "beta")]
    swept = [p for n, p in events if n == "StaleHandlesSwept"]
    assert swept and swept[0]["removed"] == 1


def test_run_sweeper_stops_on_event():
    clock = _Clock()
    reg = StreamControllerRegistry(clock=clock)
    reg.register("r1", "alpha", AbortController())
    clock.now += 10

    async def _main():
        stop = asyncio.Event()
        task = asyncio.create_task(reg.run_sweeper(0.01, 5, stop))
        await asyncio.sleep(0.05)
        stop.set()
        await asyncio.wait_for(task, timeout=1)

    asyncio.run(_main())
    assert len(reg) == 0


def test_run_sweeper_calls_hook_after_each_pass():
    reg = StreamControllerRegistry()
    calls = []

    async def _hook():
        calls.append(len(calls))
        if len(calls) == 1:
            raise RuntimeError("first pass fails")

    async def _main():
        stop = asyncio.Event()
        task = asyncio.create_task(
            reg.run_sweeper(0.01, 5, stop, on_sweep=_hook)
        )
        await asyncio.sleep(0.08)
        stop.set()
        await asyncio.wait_for(task, timeout=1)

    asyncio.run(_main())
    assert len(calls) >= 2
