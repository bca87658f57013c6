"""Validated lesson generation with concurrent asset enrichment."""

__version__ = "0.1.0"
