"""Route modules for the trellis HTTP API. Each exposes ``create_router()``."""
