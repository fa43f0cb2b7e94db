"""Canonical URL helpers for catalog pages."""

from __future__ import annotations

import re
from typing import Optional

from .config import PRODUCT_URL_BASE, SEARCH_URL

_NON_SLUG_CHARS = re.compile(r"[^a-z0-9\s-]")
_WHITESPACE = re.compile(r"\s+")


def slugify_title(title: str) -> str:
    """Lowercase, drop punctuation and join words with dashes.

    >>> slugify_title("THE MONSTERS - Big into Energy Series!")
    'the-monsters---big-into-energy-series'
    """
    slug = _NON_SLUG_CHARS.sub("", (title or "").lower()).strip()
    return _WHITESPACE.sub("-", slug)


def build_search_url(page: int, search_url: str = SEARCH_URL) -> str:
    return search_url.format(page=page)


def build_item_url(item_id: Optional[str], title: Optional[str], base_url: str = PRODUCT_URL_BASE) -> Optional[str]:
    """Return the detail-page URL, or None when id or title is missing."""
    if not item_id or not title:
        return None
    return f"{base_url.rstrip('/')}/{item_id}/{slugify_title(title)}"


__all__ = ["slugify_title", "build_search_url", "build_item_url"]
