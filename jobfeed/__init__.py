"""Tiered job retrieval (cache, store, just-in-time scraping, paid APIs) and scheduled refresh."""

__version__ = '0.1.0'
