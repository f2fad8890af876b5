"""ModelProvider interface.

A provider turns ``(model_id, messages)`` into an async stream of parts
(``TextDelta`` / ``ReasoningDelta`` / ``UsageReport``). It owns transport
only: history bounding, reasoning tag extraction and abort handling live in
``core.llm.invocation``. Tests implement their own lightweight fake.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, List

from .types import ProviderPart


@dataclass(frozen=True)
class ModelInfo:
    id: str
    supports_reasoning: bool = False
    metadata: Dict[str, Any] | None = None


class ModelProvider(ABC):
    @abstractmethod
    def stream(
        self, model_id: str, messages: List[Dict[str, str]]
    ) -> AsyncIterator[ProviderPart]:
        """Yield incremental parts for one chat completion."""

    async def aclose(self) -> None:  # optional hook
        """Release transport resources (default no-op)."""
        return None
