"""Convergence engine for static website infrastructure."""

__version__ = "0.1.0"
