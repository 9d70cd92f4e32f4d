"""Desired-state reconciliation engine for cyber-range container hosts."""

__version__ = "0.1.0"
