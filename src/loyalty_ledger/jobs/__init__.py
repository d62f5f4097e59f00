"""Recurring job entrypoints."""

__all__ = ["expiry"]
