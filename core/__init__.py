"""Compare service core: config, events, metrics, LLM gateway, compare runs."""
