"""Narrative continuity engine for long-form serialized fiction generation."""

__all__ = ["__version__"]

__version__ = "0.1.0"
