"""Encrypted backup and restore of essential application profile files."""

__version__ = "1.0.0"
