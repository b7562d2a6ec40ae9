"""Parallel review queue for CLI coding agents."""

__version__ = "0.3.0"
