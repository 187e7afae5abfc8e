"""Request handling core for an Anthropic-compatible messages proxy."""

__version__ = "0.1.0"