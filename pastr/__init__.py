"""Pastr: snippet manager with background remote sync and clipboard capture."""

__version__ = "0.1.0"
