from fastapi.testclient import TestClient

from core import metrics
from modelcompare.api.app import create_app


def test_health(container):
    with TestClient(create_app(container)) as client:
        resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok"}
    assert metrics.counter(
        "api_request_total", {"route": "/health", "method": "GET"}
    ) == 1


def test_models_flag_plan_allow_list(container, headers):
    with TestClient(create_app(container)) as client:
        free = client.get("/models", headers=headers).json()
        pro = client.get(
            "/models", headers={"X-User-Id": "u9", "X-User-Plan": "pro"}
        ).json()
    allowed = {m["id"]: m["allowed"] for m in free["models"]}
    assert allowed == {
        "alpha": True,
        "beta": True,
        "gamma": True,
        "delta-pro": False,
    }
    assert all(m["allowed"] for m in pro["models"])
    alpha = next(m for m in free["models"] if m["id"] == "alpha")
    assert alpha["supportsReasoning"] is True
    assert free["maxModels"] == 3
    assert free["plan"] == "free"


def test_unknown_plan_rejected(container):
    with TestClient(create_app(container)) as client:
        resp = client.get(
            "/models", headers={"X-User-Id": "u1", "X-User-Plan": "gold"}
        )
    assert resp.status_code == 403
    assert resp.json()["code"] == "forbidden:model"
    assert metrics.counter(
        "api_request_errors_total",
        {"route": "/models", "method": "GET", "status": "403"},
    ) == 1


def test_lifespan_opens_store_and_stops_sweeper(tmp_path, provider):
    from conftest import make_config
    from core.config.schemas.storage import StorageConfig
    from modelcompare.api.dependencies import build_container

    storage = StorageConfig(
        backend="sqlite", sqlite_path=str(tmp_path / "data" / "compare.db")
    )
    cfg = make_config().model_copy(update={"storage": storage})
    container = build_container(cfg, provider=provider)
    with TestClient(create_app(container)) as client:
        assert client.get(
            "/api/compare", params={"chatId": "6f1c9a52-2c1e-4d8e-9d6a-0c0b5a1e2f3d"},
            headers={"X-User-Id": "u1"},
        ).json() == {"items": [], "nextCursor": None, "hasMore": False}
    assert (tmp_path / "data" / "compare.db").exists()
    assert container.store._db is None
