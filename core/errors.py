"""Central error taxonomy.

Two families:
    - request level ``CompareError`` codes (``<type>:<surface>``) rejected
      before any stream opens; HTTP status derives from ``<type>``;
    - invocation error types (``provider-error``, ``timeout`` ...) used as
      metric labels and event fields for per-model failures.
"""
from __future__ import annotations

from typing import Any, Dict

_STATUS_BY_TYPE = {
    "bad_request": 400,
    "unauthorized": 401,
    "forbidden": 403,
    "not_found": 404,
    "rate_limit": 429,
}

_ALLOWED_CODES = {
    "bad_request:api",
    "bad_request:compare",
    "bad_request:database",
    "unauthorized:auth",
    "forbidden:model",
    "forbidden:chat",
    "forbidden:compare",
    "not_found:compare",
    "rate_limit:compare",
}

_ALLOWED_ERROR_TYPES = {
    # generation.runtime
    "provider-error",
    "timeout",
    "aborted",
    "stream-broken",
    # persistence
    "persistence-error",
    # config
    "config-out-of-range",
    "config-invalid",
    # infra
    "event-handler-error",
}


def validate_error_type(code: str) -> str:
    assert (
        code in _ALLOWED_ERROR_TYPES
    ), f"Unknown error_type '{code}' (not in taxonomy)"
    return code


def map_exception(e: BaseException, phase: str = "generation") -> str:
    name = e.__class__.__name__.lower()
    msg = str(e).lower()
    if phase == "persistence":
        return "persistence-error"
    if "abort" in name or "cancel" in name:
        return "aborted"
    if "timeout" in name or "timeout" in msg or "timed out" in msg:
        return "timeout"
    if "remoteprotocol" in name or "readerror" in name:
        return "stream-broken"
    return "provider-error"


class CompareError(Exception):
    """Request level failure carrying a machine readable code.

    ``code`` is ``<type>:<surface>``; ``cause`` is an optional human hint
    returned alongside the message.
    """

    def __init__(
        self, code: str, message: str, cause: str | None = None
    ) -> None:
        if code not in _ALLOWED_CODES:
            raise ValueError(f"unknown compare error code '{code}'")
        super().__init__(message)
        self.code = code
        self.message = message
        self.cause = cause

    @property
    def type(self) -> str:
        return self.code.split(":", 1)[0]

    @property
    def surface(self) -> str:
        return self.code.split(":", 1)[1]

    @property
    def status_code(self) -> int:
        return _STATUS_BY_TYPE.get(self.type, 400)

    def to_payload(self) -> Dict[str, Any]:  # noqa: D401
        return {"code": self.code, "message": self.message, "cause": self.cause}

    def __repr__(self) -> str:  # pragma: no cover - debug aid
        return f"CompareError({self.code!r}, {self.message!r})"


class NotFoundError(CompareError):
    def __init__(self, message: str, surface: str = "compare") -> None:
        super().__init__(f"not_found:{surface}", message)


class PersistenceError(Exception):
    """Store write/read failure (wraps the driver exception)."""


__all__ = [
    "validate_error_type",
    "map_exception",
    "CompareError",
    "NotFoundError",
    "PersistenceError",
]
