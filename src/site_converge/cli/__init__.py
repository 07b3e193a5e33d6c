"""Command-line interface package for site convergence."""

from .app import ConvergenceReport, build_parser, create_provider, main, render_table, run

__all__ = ["ConvergenceReport", "build_parser", "create_provider", "main", "render_table", "run"]
