"""
Pop Mart catalog monitor.

This package contains modules for fetching the storefront's search and
product detail data, reconciling it against stored item state, persisting
changes, notifying Discord and coordinating the adaptive polling loop.
"""

__all__ = [
    "config",
    "db",
    "errors",
    "fetcher",
    "main",
    "models",
    "notifier",
    "reconciler",
    "schedule",
    "scraper",
    "urls",
    "utils",
]
