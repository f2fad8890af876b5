"""Pytest configuration ensuring project root is importable.

Adds repository root (and ``src``) to sys.path explicitly to avoid
interpreter/path quirks. Shared fixtures: a scripted fake provider, a small
test config and a fully wired service container.
"""
from __future__ import annotations

import asyncio
import os
import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))
SRC = ROOT / "src"
if SRC.exists() and str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from core.config import AggregatedConfig  # noqa: E402
from core.llm.provider import ModelProvider  # noqa: E402
from core.llm.types import TextDelta, TokenUsage, UsageReport  # noqa: E402

MODELS = ["alpha", "beta", "gamma", "delta-pro"]


@pytest.fixture(autouse=True)
def _isolate_config_env():  # noqa: D401
    """Ensure global config/env side effects do not leak between tests.

    - Clear aggregated config cache between tests
    - Restore CMP_CONFIG_DIR to original value
    - Reset metrics and event listeners
    """
    from core import metrics
    from core.config import clear_config_cache  # local import
    from core.events import reset_listeners_for_tests

    prev = os.environ.get("CMP_CONFIG_DIR")
    clear_config_cache()
    metrics.reset_for_tests()
    reset_listeners_for_tests()
    try:
        yield
    finally:
        clear_config_cache()
        reset_listeners_for_tests()
        if prev is None:
            os.environ.pop("CMP_CONFIG_DIR", None)
        else:
            os.environ["CMP_CONFIG_DIR"] = prev


class HANG:
    """Script step: block until the read is cancelled."""


class ScriptedProvider(ModelProvider):
    """Fake provider replaying a per-model script.

    Steps: a provider part (yielded), a float (sleep seconds), an exception
    instance (raised) or ``HANG``. Models without a script answer ``ok``.
    """

    def __init__(self, scripts: dict | None = None) -> None:
        self.scripts = dict(scripts or {})
        self.calls: list[tuple[str, list]] = []
        self.closed: list[str] = []

    async def stream(self, model_id, messages):
        self.calls.append((model_id, messages))
        script = self.scripts.get(
            model_id,
            [TextDelta("ok"), UsageReport(TokenUsage(3, 1))],
        )
        try:
            for step in script:
                if step is HANG:
                    await asyncio.Event().wait()
                elif isinstance(step, (int, float)):
                    await asyncio.sleep(step)
                elif isinstance(step, BaseException):
                    raise step
                else:
                    yield step
        finally:
            self.closed.append(model_id)


def make_config(**compare) -> AggregatedConfig:
    """Test config: four models, ``free`` plan without ``delta-pro``."""
    return AggregatedConfig.model_validate(
        {
            "compare": {"heartbeat_interval_s": 10, **compare},
            "gateway": {
                "models": {
                    "alpha": {"supports_reasoning": True},
                    "beta": {},
                    "gamma": {},
                    "delta-pro": {},
                }
            },
            "plans": {
                "free": {
                    "period": "daily",
                    "quota": 20,
                    "models": ["alpha", "beta", "gamma"],
                },
                "pro": {"period": "monthly", "quota": 100, "models": MODELS},
            },
        }
    )


@pytest.fixture()
def provider():
    return ScriptedProvider()


@pytest.fixture()
def container(provider):
    from modelcompare.api.dependencies import build_container

    return build_container(make_config(), provider=provider)


@pytest.fixture()
def headers():
    return {"X-User-Id": "user-1", "X-User-Plan": "free"}
