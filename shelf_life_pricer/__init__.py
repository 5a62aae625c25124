"""Shelf-life import, Shopify inventory matching and expiration-driven pricing."""

__version__ = "0.3.0"
