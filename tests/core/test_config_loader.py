from pathlib import Path

import pytest

from core import metrics
from core.config import ConfigError, as_dict, clear_config_cache, get_config

REPO_CONFIGS = Path(__file__).resolve().parents[2] / "configs"


def _write(tmp_path: Path, base: str, overrides: str | None = None) -> Path:
    (tmp_path / "base.yaml").write_text(base, encoding="utf-8")
    if overrides is not None:
        (tmp_path / "overrides.local.yaml").write_text(
            overrides, encoding="utf-8"
        )
    return tmp_path


def test_repo_base_config_loads(monkeypatch):
    monkeypatch.setenv("CMP_CONFIG_DIR", str(REPO_CONFIGS))
    cfg = get_config()
    assert cfg.compare.max_models == 3
    assert cfg.compare.history_limit == 24
    assert cfg.compare.heartbeat_interval_s == 10
    assert cfg.compare.request_timeout_s == 60
    assert cfg.gateway.models["xai/grok-3-mini"].supports_reasoning
    free = cfg.plans.get("free")
    assert free.period == "daily" and free.quota == 20
    assert set(free.models) <= set(cfg.gateway.models)
    assert cfg.storage.backend == "memory"


def test_overrides_file_merges_over_base(tmp_path, monkeypatch):
    _write(
        tmp_path,
        "compare:\n  max_models: 3\n  history_limit: 24\n",
        "compare:\n  history_limit: 6\n",
    )
    monkeypatch.setenv("CMP_CONFIG_DIR", str(tmp_path))
    cfg = get_config()
    assert cfg.compare.history_limit == 6
    assert cfg.compare.max_models == 3


def test_env_override_counts_metric(tmp_path, monkeypatch):
    _write(tmp_path, "compare:\n  request_timeout_s: 60\n")
    monkeypatch.setenv("CMP_CONFIG_DIR", str(tmp_path))
    monkeypatch.setenv("CMP__COMPARE__REQUEST_TIMEOUT_S", "45.5")
    assert as_dict()["compare"]["request_timeout_s"] == 45.5
    assert metrics.counter(
        "env_override_total", {"path": "compare.request_timeout_s"}
    ) == 1


def test_get_config_is_cached_until_cleared(tmp_path, monkeypatch):
    _write(tmp_path, "compare:\n  history_limit: 10\n")
    monkeypatch.setenv("CMP_CONFIG_DIR", str(tmp_path))
    assert get_config() is get_config()
    _write(tmp_path, "compare:\n  history_limit: 12\n")
    assert get_config().compare.history_limit == 10
    clear_config_cache()
    assert get_config().compare.history_limit == 12


@pytest.mark.parametrize(
    "yaml_text,fragment",
    [
        ("llm:\n  primary: {}\n", "Unknown config sections"),
        ("compare:\n  unknown_field: 1\n", "compare"),
        ("compare:\n  max_models: 4\n", "compare"),
        (
            "compare:\n  heartbeat_interval_s: 30\n  request_timeout_s: 20\n",
            "compare.heartbeat_interval_s",
        ),
        (
            "gateway:\n  models:\n    a: {}\n"
            "plans:\n  free:\n    models: [a, ghost]\n",
            "plans.free.models",
        ),
        ("storage:\n  backend: postgres\n", "storage"),
    ],
)
def test_invalid_config_rejected(tmp_path, monkeypatch, yaml_text, fragment):
    _write(tmp_path, yaml_text)
    monkeypatch.setenv("CMP_CONFIG_DIR", str(tmp_path))
    with pytest.raises(ConfigError) as ei:
        get_config()
    assert fragment in str(ei.value)


def test_cross_validation_failure_counted(tmp_path, monkeypatch):
    _write(
        tmp_path,
        "compare:\n  heartbeat_interval_s: 60\n  request_timeout_s: 60\n",
    )
    monkeypatch.setenv("CMP_CONFIG_DIR", str(tmp_path))
    with pytest.raises(ConfigError):
        get_config()
    assert metrics.counter(
        "config_validation_errors_total",
        {"path": "compare.heartbeat_interval_s", "code": "config-out-of-range"},
    ) == 1
