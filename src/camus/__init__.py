"""Camus task service and client helpers."""

__version__ = "0.1.0"
