"""Carteira portfolio ledger and performance analytics service."""

__version__ = "0.1.0"
