"""LLM stream part and invocation result types."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Union


@dataclass(slots=True)
class TokenUsage:
    input_tokens: int | None = None
    output_tokens: int | None = None

    def to_wire(self) -> Dict[str, Any]:  # noqa: D401
        return {
            "inputTokens": self.input_tokens,
            "outputTokens": self.output_tokens,
        }

    @staticmethod
    def from_wire(data: Dict[str, Any] | None) -> "TokenUsage | None":
        if not data:
            return None
        return TokenUsage(
            input_tokens=data.get("inputTokens"),
            output_tokens=data.get("outputTokens"),
        )


@dataclass(slots=True)
class ChatTurn:
    role: str  # user|assistant|system
    content: str

    def to_message(self) -> Dict[str, str]:  # noqa: D401
        return {"role": self.role, "content": self.content}


@dataclass(slots=True)
class TextDelta:
    delta: str
    kind: str = "text"


@dataclass(slots=True)
class ReasoningDelta:
    delta: str
    kind: str = "reasoning"


@dataclass(slots=True)
class UsageReport:
    """Provider-level part: usage reported by the final stream chunk."""
    usage: TokenUsage


@dataclass(slots=True)
class InvocationCompleted:
    usage: TokenUsage | None = None


@dataclass(slots=True)
class InvocationFailed:
    message: str
    error_type: str = "provider-error"


ProviderPart = Union[TextDelta, ReasoningDelta, UsageReport]
InvocationEvent = Union[
    TextDelta, ReasoningDelta, InvocationCompleted, InvocationFailed
]
