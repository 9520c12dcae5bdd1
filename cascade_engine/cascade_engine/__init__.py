"""Cadenza cascade deletion and integrity engine."""

__version__ = "0.1.0"
