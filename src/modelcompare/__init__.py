"""Multi-model compare service: HTTP API and stream client."""

__version__ = "0.1.0"
