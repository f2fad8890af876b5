import asyncio
from datetime import date, datetime, timezone

import pytest

from conftest import make_config
from core import metrics
from core.compare.usage import (
    Entitlements,
    InMemoryUsageLedger,
    Principal,
    UsageService,
    approx_tokens,
    period_start,
)
from core.errors import CompareError

NOW = datetime(2026, 7, 15, 18, 0, tzinfo=timezone.utc)


def _service(ledger=None):
    return UsageService(
        ledger or InMemoryUsageLedger(),
        Entitlements(make_config().plans),
        clock=lambda: NOW,
    )


def test_approx_tokens_rounds_up():
    assert approx_tokens(0) == 0
    assert approx_tokens(1) == 1
    assert approx_tokens(8) == 2
    assert approx_tokens(9) == 3


def test_period_start():
    assert period_start("daily", NOW) == date(2026, 7, 15)
    assert period_start("monthly", NOW) == date(2026, 7, 1)


def test_allow_list_per_plan():
    ent = Entitlements(make_config().plans)
    assert ent.denied("free", ["alpha", "delta-pro"]) == ["delta-pro"]
    assert ent.denied("pro", ["alpha", "delta-pro"]) == []
    with pytest.raises(CompareError) as ei:
        ent.plan("enterprise")
    assert ei.value.code == "forbidden:model"


def test_quota_boundary_is_inclusive():
    ledger = InMemoryUsageLedger()
    svc = _service(ledger)
    me = Principal("u1", "free")

    async def _main():
        await ledger.upsert_daily("u1", "alpha", NOW.date(), 1, 1, messages=18)
        await svc.check_quota(me, 2)  # 18 + 2 == 20 allowed
        with pytest.raises(CompareError) as ei:
            await svc.check_quota(me, 3)
        return ei.value

    err = asyncio.run(_main())
    assert err.code == "rate_limit:compare"
    assert err.status_code == 429
    assert err.message == "Insufficient quota for compare run"


def test_monthly_plan_counts_whole_month():
    ledger = InMemoryUsageLedger()
    svc = _service(ledger)

    async def _main():
        await ledger.upsert_daily("u1", "alpha", date(2026, 7, 2), 0, 0, 40)
        await ledger.upsert_daily("u1", "alpha", date(2026, 6, 30), 0, 0, 90)
        return await svc.usage(Principal("u1", "pro"))

    assert asyncio.run(_main()) == (40, 100)


def test_credit_records_one_message_with_approx_tokens():
    ledger = InMemoryUsageLedger()
    svc = _service(ledger)
    asyncio.run(svc.credit("u1", "beta", "x" * 10, "y" * 17))
    row = ledger.row("u1", "beta", NOW.date())
    assert (row.messages, row.tokens_in, row.tokens_out) == (1, 3, 5)


class _BrokenLedger(InMemoryUsageLedger):
    async def upsert_daily(self, *a, **kw):
        raise RuntimeError("ledger offline")


def test_credit_failure_is_swallowed_and_counted():
    svc = _service(_BrokenLedger())
    asyncio.run(svc.credit("u1", "beta", "p", "c"))
    assert metrics.counter("compare_usage_credit_errors_total") == 1
