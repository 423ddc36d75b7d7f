"""Lookalike: find the reference face closest to an uploaded photo."""

__version__ = "0.1.0"
