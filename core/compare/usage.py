"""Plan entitlements, quota check and usage crediting.

Each model of a compare run counts as one message against the plan quota
(``used + N <= quota``). After a model completes, usage is credited to the
daily ledger with tokens approximated as ``ceil(chars / 4)``.
"""
from __future__ import annotations

import asyncio
import logging
import math
from dataclasses import dataclass
from datetime import date, datetime
from typing import Callable, Dict, List, Protocol, Sequence, Tuple

from core import metrics
from core.config.schemas.plans import PlanConfig, PlansConfig
from core.errors import CompareError

from .models import utcnow

log = logging.getLogger("compare.usage")


@dataclass(frozen=True, slots=True)
class Principal:
    """Resolved caller identity (issued by the external identity layer)."""
    user_id: str
    plan: str = "free"


def approx_tokens(chars: int) -> int:
    return math.ceil(chars / 4)


class Entitlements:
    def __init__(self, plans: PlansConfig) -> None:
        self._plans = plans

    def plan(self, name: str) -> PlanConfig:
        plan = self._plans.get(name)
        if plan is None:
            raise CompareError(
                "forbidden:model", f"Unknown plan '{name}'"
            )
        return plan

    def allowed_models(self, plan: str) -> List[str]:
        return list(self.plan(plan).models)

    def denied(self, plan: str, model_ids: Sequence[str]) -> List[str]:
        allowed = set(self.allowed_models(plan))
        return [m for m in model_ids if m not in allowed]


@dataclass(slots=True)
class UsageRow:
    messages: int = 0
    tokens_in: int = 0
    tokens_out: int = 0


class UsageLedger(Protocol):
    async def messages_since(self, user_id: str, since: date) -> int: ...

    async def upsert_daily(
        self,
        user_id: str,
        model_id: str,
        day: date,
        tokens_in: int,
        tokens_out: int,
        messages: int = 1,
    ) -> None: ...


class InMemoryUsageLedger:
    def __init__(self) -> None:
        self._rows: Dict[Tuple[str, str, date], UsageRow] = {}
        self._lock = asyncio.Lock()

    async def messages_since(self, user_id: str, since: date) -> int:
        return sum(
            row.messages
            for (uid, _, day), row in self._rows.items()
            if uid == user_id and day >= since
        )

    async def upsert_daily(
        self,
        user_id: str,
        model_id: str,
        day: date,
        tokens_in: int,
        tokens_out: int,
        messages: int = 1,
    ) -> None:
        async with self._lock:
            row = self._rows.setdefault((user_id, model_id, day), UsageRow())
            row.messages += messages
            row.tokens_in += tokens_in
            row.tokens_out += tokens_out

    def row(self, user_id: str, model_id: str, day: date) -> UsageRow | None:
        return self._rows.get((user_id, model_id, day))


def period_start(period: str, now: datetime) -> date:
    today = now.date()
    if period == "monthly":
        return today.replace(day=1)
    return today


class UsageService:
    def __init__(
        self,
        ledger: UsageLedger,
        entitlements: Entitlements,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.ledger = ledger
        self.entitlements = entitlements
        self._clock = clock

    async def usage(self, principal: Principal) -> Tuple[int, int]:
        """(used, quota) for the caller's current plan period."""
        plan = self.entitlements.plan(principal.plan)
        since = period_start(plan.period, self._clock())
        used = await self.ledger.messages_since(principal.user_id, since)
        return used, plan.quota

    async def check_quota(self, principal: Principal, required: int) -> None:
        used, quota = await self.usage(principal)
        if used + required > quota:
            log.info(
                "quota exceeded user=%s needs=%d remaining=%d",
                principal.user_id,
                required,
                max(0, quota - used),
            )
            raise CompareError(
                "rate_limit:compare",
                "Insufficient quota for compare run",
                cause=f"{max(0, quota - used)} remaining, {required} required",
            )

    async def credit(
        self, user_id: str, model_id: str, prompt: str, content: str
    ) -> None:
        """Record one message for a completed model; never raises."""
        try:
            await self.ledger.upsert_daily(
                user_id,
                model_id,
                self._clock().date(),
                tokens_in=approx_tokens(len(prompt)),
                tokens_out=approx_tokens(len(content)),
                messages=1,
            )
        except Exception:  # noqa: BLE001
            metrics.inc("compare_usage_credit_errors_total")
            log.exception(
                "usage crediting failed user=%s model=%s", user_id, model_id
            )


__all__ = [
    "Principal",
    "Entitlements",
    "UsageLedger",
    "InMemoryUsageLedger",
    "UsageService",
    "approx_tokens",
    "period_start",
]
