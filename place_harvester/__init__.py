"""Resumable batch collection of map place records."""

__version__ = "0.1.0"
