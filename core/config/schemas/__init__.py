"""Per-section config schemas (one module per concern)."""
