"""Lens - on-chain trade reconstruction, holder census and early-buyer analytics."""

__version__ = "0.1.0"
