"""SSE utilities."""
from __future__ import annotations

import json
import re
from contextlib import aclosing
from typing import AsyncGenerator, AsyncIterator

from core.compare.wire import StreamEvent

# only CR, LF and CRLF end an SSE line; U+2028, U+0085 etc. are payload
_LINE_BREAK = re.compile(r"\r\n|\r|\n")

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def format_event(event: str | None, data: str) -> str:
    lines = []
    if event:
        lines.append(f"event: {event}")
    for line in _LINE_BREAK.split(data):
        lines.append(f"data: {line}")
    return "\n".join(lines) + "\n\n"


def encode_event(ev: StreamEvent) -> str:
    """One compare event as a single unnamed ``data:`` frame.

    JSON output never holds a raw CR or LF, so the payload is one line.
    """
    payload = json.dumps(
        ev.to_wire(), ensure_ascii=False, separators=(",", ":")
    )
    return f"data: {payload}\n\n"


async def sse_stream(
    events: AsyncIterator[StreamEvent],
) -> AsyncGenerator[str, None]:
    # closing the response closes the event source as well
    async with aclosing(events):
        async for ev in events:
            yield encode_event(ev)


__all__ = ["format_event", "encode_event", "sse_stream", "SSE_HEADERS"]
