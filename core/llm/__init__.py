"""LLM providers abstraction layer exports.

No built-in dummy provider. Tests implement their own lightweight fake
provider (any object with an async ``stream(model_id, messages)``).
"""

from .abort import AbortController, AbortSignal  # noqa: F401
from .provider import ModelProvider, ModelInfo  # noqa: F401
from .types import (  # noqa: F401
    ChatTurn,
    InvocationCompleted,
    InvocationFailed,
    ReasoningDelta,
    TextDelta,
    TokenUsage,
    UsageReport,
)
from .exceptions import ModelError, ModelGenerationError  # noqa: F401
from .invocation import ModelInvoker  # noqa: F401

__all__ = [
    "AbortController",
    "AbortSignal",
    "ModelProvider",
    "ModelInfo",
    "ChatTurn",
    "InvocationCompleted",
    "InvocationFailed",
    "ReasoningDelta",
    "TextDelta",
    "TokenUsage",
    "UsageReport",
    "ModelError",
    "ModelGenerationError",
    "ModelInvoker",
]
