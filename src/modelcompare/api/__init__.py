"""HTTP layer (FastAPI app factory, SSE framing, routes)."""
