"""
Pandoc Bot package.

A Telegram bot that converts documents with pandoc (and docling for PDF and
Office inputs), remembering each user's preferred output format.
"""

__all__ = ["__version__"]

__version__ = "0.1.0"
