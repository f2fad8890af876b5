from core import metrics
from core.events import (
    CompareRunFinished,
    CompareRunStarted,
    ModelStreamCancelled,
    ModelStreamCompleted,
    emit,
    on,
    subscribe,
    subscribe_named,
)


def test_named_and_any_dispatch():
    got, names = [], []
    subscribe_named("CompareRunStarted", lambda p: got.append(p["run_id"]))
    on(lambda n, p: names.append(n))
    emit(
        CompareRunStarted(
            run_id="r1", chat_id="c1", user_id="u1", model_ids=["alpha"]
        )
    )
    assert got == ["r1"]
    assert names == ["CompareRunStarted"]
    assert metrics.counter(
        "events_emitted_total", {"event": "CompareRunStarted"}
    ) == 1
    assert metrics.counter("compare_runs_started_total") == 1


def test_handler_exception_isolated_and_counted():
    def _boom(name, payload):
        raise RuntimeError("handler bug")

    seen = []
    on(_boom)
    on(lambda n, p: seen.append(n))
    emit(CompareRunFinished(run_id="r1", status="completed", duration_ms=5))
    assert seen == ["CompareRunFinished"]
    assert metrics.counter(
        "handler_exceptions_total", {"event": "CompareRunFinished"}
    ) == 1


def test_unsubscribe():
    seen = []
    unsub = subscribe(lambda n, p: seen.append(n))
    emit(CompareRunFinished(run_id="r1", status="canceled", duration_ms=1))
    unsub()
    emit(CompareRunFinished(run_id="r2", status="canceled", duration_ms=1))
    assert len(seen) == 1


def test_collector_derives_compare_metrics():
    emit(
        ModelStreamCompleted(
            run_id="r1", model_id="alpha", inference_time_ms=120, output_chars=9
        )
    )
    emit(ModelStreamCancelled(run_id="r1", model_id="beta", reason="timeout"))
    emit(CompareRunFinished(run_id="r1", status="completed", duration_ms=130))
    assert metrics.counter(
        "compare_model_outcome_total", {"model": "alpha", "status": "completed"}
    ) == 1
    assert metrics.counter(
        "compare_model_outcome_total", {"model": "beta", "status": "canceled"}
    ) == 1
    assert metrics.counter(
        "compare_streams_canceled_total", {"path": "timeout"}
    ) == 1
    assert metrics.counter(
        "compare_runs_finished_total", {"status": "completed"}
    ) == 1
    hist = metrics.snapshot()["histograms"]
    assert hist["compare_inference_ms{model=alpha}"]["last"] == 120


def test_event_payload_has_timestamp():
    captured = []
    on(lambda n, p: captured.append(p))
    emit(CompareRunFinished(run_id="r9", status="failed", duration_ms=0))
    assert captured[0]["run_id"] == "r9"
    assert captured[0]["ts"] > 0
