"""Splitwise expense cache service."""

__version__ = "0.1.0"
