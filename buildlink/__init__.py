"""buildlink - thin client for a background build/typecheck server."""

__version__ = "0.3.0"
