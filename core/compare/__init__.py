"""Compare runs: registry, state machine, multiplexer, stores, service."""

from .cancellation import CancellationService, CancelOutcome  # noqa: F401
from .chats import Chat, ChatRepository, InMemoryChatRepository  # noqa: F401
from .models import (  # noqa: F401
    CompareResult,
    CompareRun,
    ResultStatus,
    RunPage,
    RunStatus,
)
from .multiplexer import CompareContext, CompareMultiplexer  # noqa: F401
from .registry import StreamControllerRegistry, StreamHandle  # noqa: F401
from .service import CompareRequest, CompareService  # noqa: F401
from .sqlite_store import SqliteCompareStore  # noqa: F401
from .state import RunStateMachine  # noqa: F401
from .store import CompareStore, InMemoryCompareStore  # noqa: F401
from .usage import (  # noqa: F401
    Entitlements,
    InMemoryUsageLedger,
    Principal,
    UsageService,
)

__all__ = [
    "CancellationService",
    "CancelOutcome",
    "Chat",
    "ChatRepository",
    "InMemoryChatRepository",
    "CompareResult",
    "CompareRun",
    "ResultStatus",
    "RunPage",
    "RunStatus",
    "CompareContext",
    "CompareMultiplexer",
    "StreamControllerRegistry",
    "StreamHandle",
    "CompareRequest",
    "CompareService",
    "SqliteCompareStore",
    "RunStateMachine",
    "CompareStore",
    "InMemoryCompareStore",
    "Entitlements",
    "InMemoryUsageLedger",
    "Principal",
    "UsageService",
]
