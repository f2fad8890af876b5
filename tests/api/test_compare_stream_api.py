import uuid

from fastapi.testclient import TestClient

from conftest import ScriptedProvider, make_config
from core.llm.exceptions import ModelGenerationError
from core.llm.types import TextDelta, TokenUsage, UsageReport
from modelcompare.api.app import create_app
from modelcompare.api.dependencies import build_container
from modelcompare.client import SSEDecoder


def _stream(client, body, headers):
    with client.stream(
        "POST", "/api/compare/stream", json=body, headers=headers
    ) as resp:
        assert resp.status_code == 200
        assert resp.headers["content-type"].startswith("text/event-stream")
        assert resp.headers["cache-control"] == "no-cache"
        raw = "".join(resp.iter_text())
    assert raw.startswith("data: ")
    return SSEDecoder().feed(raw)


def _app(scripts):
    provider = ScriptedProvider(scripts)
    container = build_container(make_config(), provider=provider)
    return create_app(container), container, provider


def test_full_success_streams_and_persists(headers):
    app, _, _ = _app(
        {
            "alpha": [TextDelta("2+2"), TextDelta(" = 4")],
            "beta": [TextDelta("4"), UsageReport(TokenUsage(6, 1))],
        }
    )
    chat_id = str(uuid.uuid4())
    with TestClient(app) as client:
        events = _stream(
            client,
            {"chatId": chat_id, "prompt": "2+2?", "modelIds": ["alpha", "beta"]},
            headers,
        )
        run_id = events[0]["runId"]
        detail = client.get(f"/api/compare/{run_id}", headers=headers).json()
        listing = client.get(
            "/api/compare", params={"chatId": chat_id}, headers=headers
        ).json()
    assert events[0] == {
        "type": "run_start",
        "runId": run_id,
        "chatId": chat_id,
        "models": ["alpha", "beta"],
    }
    assert events[-1] == {"type": "run_end", "runId": run_id}
    for model_id in ("alpha", "beta"):
        kinds = [e["type"] for e in events if e.get("modelId") == model_id]
        assert kinds[0] == "model_start"
        assert kinds[-1] == "model_end"
        assert kinds.count("model_end") == 1
    beta_end = next(
        e for e in events if e["type"] == "model_end" and e["modelId"] == "beta"
    )
    assert beta_end["usage"] == {"inputTokens": 6, "outputTokens": 1}
    assert detail["run"]["status"] == "completed"
    results = {r["modelId"]: r for r in detail["results"]}
    assert results["alpha"]["content"] == "2+2 = 4"
    assert all(r["status"] == "completed" for r in results.values())
    assert all(r["inferenceTimeMs"] is not None for r in results.values())
    assert listing["hasMore"] is False
    assert [i["id"] for i in listing["items"]] == [run_id]


def test_partial_failure_run_still_completes(headers):
    app, _, _ = _app(
        {
            "alpha": [TextDelta("fine")],
            "beta": [ModelGenerationError("provider exploded")],
        }
    )
    with TestClient(app) as client:
        events = _stream(
            client,
            {
                "chatId": str(uuid.uuid4()),
                "prompt": "hi",
                "modelIds": ["alpha", "beta"],
            },
            headers,
        )
        run_id = events[0]["runId"]
        detail = client.get(f"/api/compare/{run_id}", headers=headers).json()
    beta = [e["type"] for e in events if e.get("modelId") == "beta"]
    assert beta == ["model_start", "model_error"]
    err = next(e for e in events if e["type"] == "model_error")
    assert err["error"] == "provider exploded"
    assert events[-1]["type"] == "run_end"
    assert detail["run"]["status"] == "completed"
    statuses = {r["modelId"]: r["status"] for r in detail["results"]}
    assert statuses == {"alpha": "completed", "beta": "failed"}


def test_quota_consumed_by_completed_models(headers):
    app, _, _ = _app({})
    body = {
        "chatId": str(uuid.uuid4()),
        "prompt": "hi",
        "modelIds": ["alpha", "beta", "gamma"],
    }
    with TestClient(app) as client:
        models_before = client.get("/models", headers=headers).json()
        _stream(client, body, headers)
        models_after = client.get("/models", headers=headers).json()
    assert models_before["quota"] == {"used": 0, "limit": 20}
    assert models_after["quota"] == {"used": 3, "limit": 20}


def test_cancel_after_completion_is_noop(headers):
    app, _, _ = _app({})
    with TestClient(app) as client:
        events = _stream(
            client,
            {"chatId": str(uuid.uuid4()), "prompt": "hi", "modelIds": ["alpha"]},
            headers,
        )
        run_id = events[0]["runId"]
        resp = client.post(
            "/api/compare/cancel", json={"runId": run_id}, headers=headers
        )
        one = client.post(
            "/api/compare/cancel",
            json={"runId": run_id, "modelId": "alpha"},
            headers=headers,
        )
        detail = client.get(f"/api/compare/{run_id}", headers=headers).json()
    assert resp.status_code == 200
    assert resp.json() == {
        "success": True,
        "message": "Canceled compare run",
        "canceledStreams": 0,
    }
    assert one.json()["canceledStreams"] == 0
    assert one.json()["message"] == "Canceled model alpha"
    assert detail["run"]["status"] == "completed"
    assert detail["results"][0]["status"] == "completed"


def test_history_passed_to_every_model(headers):
    app, container, provider = _app({})
    chat_id = str(uuid.uuid4())
    with TestClient(app) as client:
        _stream(
            client,
            {"chatId": chat_id, "prompt": "first", "modelIds": ["alpha"]},
            headers,
        )
        container.chats.add_message(chat_id, "user", "first")
        container.chats.add_message(chat_id, "assistant", "ok")
        _stream(
            client,
            {"chatId": chat_id, "prompt": "second", "modelIds": ["alpha", "beta"]},
            headers,
        )
    second = provider.calls[1:]
    assert sorted(m for m, _ in second) == ["alpha", "beta"]
    for _, messages in second:
        assert [m["content"] for m in messages[1:]] == ["first", "ok", "second"]


def test_unicode_line_separators_survive_the_stream(headers):
    app, _, _ = _app(
        {"alpha": [TextDelta("a\u2028b"), TextDelta("\x85c\u2029")]}
    )
    with TestClient(app) as client:
        events = _stream(
            client,
            {
                "chatId": str(uuid.uuid4()),
                "prompt": "odd text",
                "modelIds": ["alpha"],
            },
            headers,
        )
        run_id = events[0]["runId"]
        detail = client.get(f"/api/compare/{run_id}", headers=headers).json()
    live = "".join(e["textDelta"] for e in events if e["type"] == "delta")
    assert live == "a\u2028b\x85c\u2029"
    assert detail["results"][0]["content"] == live
    assert events[-1]["type"] == "run_end"
