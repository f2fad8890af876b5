"""Model Invocation Adapter.

Wraps one provider call into a lazy async sequence of
``TextDelta`` / ``ReasoningDelta`` terminated by exactly one
``InvocationCompleted`` or ``InvocationFailed`` (nothing at all once the
abort signal fired).

Cancellation: every wait for the next provider part races the abort
signal; on abort the pending read is cancelled and the provider stream is
closed. Parts that arrive after the signal are dropped. No retries.
"""
from __future__ import annotations

import asyncio
import logging
from typing import AsyncIterator, Iterable, List, Sequence

from core.errors import map_exception

from .abort import AbortSignal
from .adapters import ReasoningTagAdapter
from .provider import ModelProvider
from .types import (
    ChatTurn,
    InvocationCompleted,
    InvocationEvent,
    InvocationFailed,
    TextDelta,
    UsageReport,
)

log = logging.getLogger("compare.invocation")

MAX_HISTORY_MESSAGES = 24

_END = object()
_ABORTED = object()


def build_messages(
    system: str | None,
    history: Sequence[ChatTurn],
    prompt: str,
    limit: int = MAX_HISTORY_MESSAGES,
) -> List[dict]:
    """System + most recent ``limit`` history turns + the new user turn."""
    messages: List[dict] = []
    if system:
        messages.append({"role": "system", "content": system})
    bounded = list(history)[-limit:] if limit > 0 else []
    messages.extend(t.to_message() for t in bounded)
    messages.append({"role": "user", "content": prompt})
    return messages


async def _next_or_abort(it: AsyncIterator, signal: AbortSignal):
    if signal.aborted:
        return _ABORTED
    nxt = asyncio.ensure_future(it.__anext__())
    waiter = asyncio.ensure_future(signal.wait())
    try:
        done, _ = await asyncio.wait(
            {nxt, waiter}, return_when=asyncio.FIRST_COMPLETED
        )
    except asyncio.CancelledError:
        nxt.cancel()
        await asyncio.gather(nxt, return_exceptions=True)
        raise
    finally:
        waiter.cancel()
    if nxt in done:
        try:
            return nxt.result()
        except StopAsyncIteration:
            return _END
    nxt.cancel()
    # reap the cancelled read so the provider generator can be closed
    await asyncio.gather(nxt, return_exceptions=True)
    return _ABORTED


class ModelInvoker:
    def __init__(
        self,
        provider: ModelProvider,
        reasoning_models: Iterable[str] = (),
        reasoning_tag: str = "thinking",
        history_limit: int = MAX_HISTORY_MESSAGES,
    ) -> None:
        self.provider = provider
        self._reasoning_models = frozenset(reasoning_models)
        self._reasoning_tag = reasoning_tag
        self.history_limit = history_limit

    async def invoke(
        self,
        model_id: str,
        system: str | None,
        history: Sequence[ChatTurn],
        prompt: str,
        signal: AbortSignal,
    ) -> AsyncIterator[InvocationEvent]:
        messages = build_messages(system, history, prompt, self.history_limit)
        adapter = (
            ReasoningTagAdapter(self._reasoning_tag)
            if model_id in self._reasoning_models
            else None
        )
        stream = self.provider.stream(model_id, messages)
        usage = None
        try:
            while True:
                part = await _next_or_abort(stream, signal)
                if part is _ABORTED:
                    return
                if part is _END:
                    break
                if isinstance(part, UsageReport):
                    usage = part.usage
                    continue
                if adapter is not None and isinstance(part, TextDelta):
                    out = adapter.feed(part.delta)
                else:
                    out = [part]
                for ev in out:
                    if signal.aborted:
                        return
                    yield ev
            if adapter is not None:
                for ev in adapter.flush():
                    if signal.aborted:
                        return
                    yield ev
            if signal.aborted:
                return
            yield InvocationCompleted(usage=usage)
        except Exception as e:  # noqa: BLE001
            if signal.aborted:
                return
            log.warning(
                "invocation failed model=%s error=%s", model_id, e
            )
            yield InvocationFailed(
                message=str(e) or e.__class__.__name__,
                error_type=map_exception(e),
            )
        finally:
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()


__all__ = [
    "MAX_HISTORY_MESSAGES",
    "ModelInvoker",
    "build_messages",
]
