"""Convergence state persistence."""

from .store import StateStore, utc_timestamp

__all__ = ["StateStore", "utc_timestamp"]
