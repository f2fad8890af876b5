"""LLM related exception hierarchy."""


class ModelError(Exception):
    """Base model exception."""


class ModelGenerationError(ModelError):
    """Raised when text generation fails.

    Reasons: gateway HTTP error, malformed stream chunk, provider-side error
    payload.
    """
