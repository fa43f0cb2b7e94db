from __future__ import annotations

from dataclasses import replace
from typing import Any, Dict, Iterable, List

import pytest

from popmart_monitor.errors import PageUnreachable
from popmart_monitor.models import Item

SEARCH_URL = "https://shop.test/search?page={page}"


def listing_entry(item_id, title, price=2500, stock=5, item_type="normal", image="https://img.test/banner.jpg"):
    return {
        "id": item_id,
        "title": title,
        "type": item_type,
        "bannerImages": [image],
        "skus": [{"price": price, "stock": {"onlineStock": stock}}],
    }


def listing_payload(entries, total=None, page_size=None, page=1):
    return {
        "code": "OK",
        "data": {
            "total": len(entries) if total is None else total,
            "pageSize": page_size or max(len(entries), 1),
            "page": page,
            "list": entries,
        },
    }


def detail_payload(online_stock, image="https://img.test/main.jpg"):
    return {
        "code": "OK",
        "data": {"skus": [{"stock": {"onlineStock": online_stock}, "mainImage": image}]},
    }


class FakeFetcher:
    """Scripted fetcher: each URL maps to a list of outcomes consumed in order.

    An outcome is either a list of payloads or an exception to raise. The
    last outcome repeats once the others are used up.
    """

    def __init__(self, responses: Dict[str, List[Any]] | None = None):
        self.responses = {url: list(outcomes) for url, outcomes in (responses or {}).items()}
        self.calls: List[str] = []
        self.closed = 0

    def fetch_json(self, url, payload_filter):
        self.calls.append(url)
        outcomes = self.responses.get(url)
        if not outcomes:
            raise PageUnreachable(f"no scripted response for {url}", url=url)
        outcome = outcomes.pop(0) if len(outcomes) > 1 else outcomes[0]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    def close(self):
        self.closed += 1


class FakeStore:
    """In-memory stand-in for ItemStore that hands out fresh copies."""

    def __init__(self, items: Iterable[Item] = ()):
        self.items: Dict[str, Item] = {it.id: replace(it) for it in items}
        self.upserts: List[List[Item]] = []

    def find_all(self):
        return {k: replace(v) for k, v in self.items.items()}

    def find_priority(self):
        return [replace(v) for v in self.items.values() if v.is_priority]

    def bulk_upsert(self, items):
        batch = [replace(it) for it in items]
        self.upserts.append(batch)
        for it in batch:
            existing = self.items.get(it.id)
            if existing is not None:
                it = replace(it, is_priority=existing.is_priority)
            self.items[it.id] = it
        return len(batch)


def search_url(page: int) -> str:
    return SEARCH_URL.format(page=page)


@pytest.fixture
def no_sleep():
    calls: List[float] = []
    return calls.append, calls
