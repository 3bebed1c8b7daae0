"""Lesson Portal: class lesson distribution with hardened uploads."""

__version__ = "0.1.0"
