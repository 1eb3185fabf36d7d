"""Escrow ledger for a home-services marketplace."""

__version__ = "1.0.0"
