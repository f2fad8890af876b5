"""Reasoning tag streaming adapter.

Splits a text stream of the form::

    <thinking>step one ... step two</thinking>The answer is 4.

into reasoning and text parts incrementally. Tags may straddle chunk
boundaries; a possible partial tag at the end of a chunk is held back until
the next chunk (or ``flush``) resolves it.
"""
from __future__ import annotations

from typing import List, Union

from .types import ReasoningDelta, TextDelta

Part = Union[TextDelta, ReasoningDelta]


def _partial_suffix_len(buf: str, marker: str) -> int:
    """Length of the longest suffix of ``buf`` that prefixes ``marker``."""
    upper = min(len(buf), len(marker) - 1)
    for k in range(upper, 0, -1):
        if buf.endswith(marker[:k]):
            return k
    return 0


class ReasoningTagAdapter:
    def __init__(self, tag: str = "thinking") -> None:
        self._open = f"<{tag}>"
        self._close = f"</{tag}>"
        self._buf = ""
        self._inside = False

    @property
    def inside_reasoning(self) -> bool:
        return self._inside

    def _emit(self, segment: str, out: List[Part]) -> None:
        if not segment:
            return
        if self._inside:
            out.append(ReasoningDelta(segment))
        else:
            out.append(TextDelta(segment))

    def feed(self, chunk: str) -> List[Part]:
        self._buf += chunk
        out: List[Part] = []
        while self._buf:
            marker = self._close if self._inside else self._open
            idx = self._buf.find(marker)
            if idx >= 0:
                self._emit(self._buf[:idx], out)
                self._buf = self._buf[idx + len(marker):]
                self._inside = not self._inside
                continue
            keep = _partial_suffix_len(self._buf, marker)
            self._emit(self._buf[: len(self._buf) - keep], out)
            self._buf = self._buf[len(self._buf) - keep:]
            break
        return out

    def flush(self) -> List[Part]:
        out: List[Part] = []
        self._emit(self._buf, out)
        self._buf = ""
        return out


__all__ = ["ReasoningTagAdapter"]
