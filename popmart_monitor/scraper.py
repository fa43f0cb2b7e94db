"""Catalog passes.

Two kinds of pass feed the reconciler:

- :func:`check_products` walks every search results page and reconciles
  each listed item (new items, restocks, sell-outs, price changes).
- :func:`check_hot_products` visits the detail page of each priority item
  directly for faster stock-flip detection.

Both return the :class:`SessionState` of the pass after persisting its
changeset with a single bulk upsert.
"""

from __future__ import annotations

import logging
import math
import time
from typing import Any, Callable, List, Optional, Tuple

from .config import (
    DETAIL_ENDPOINT_MARKER,
    FAIL_THRESHOLD,
    LISTING_ENDPOINT_MARKER,
    MAX_PAGE_FAILS,
    PAGE_RETRY_DELAY_SECONDS,
    SEARCH_URL,
)
from .db import ItemStore
from .errors import DataExtractionFailure, HighTrafficDetected, PageUnreachable
from .fetcher import PageFetcher, PayloadFilter
from .models import Item, Observation
from .reconciler import SessionState, reconcile_batch, reconcile_stock
from .urls import build_search_url

logger = logging.getLogger(__name__)


def _to_int(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _first_sku(raw: dict) -> dict:
    skus = raw.get("skus")
    if isinstance(skus, list) and skus and isinstance(skus[0], dict):
        return skus[0]
    return {}


def _is_ok(data: Any) -> bool:
    return isinstance(data, dict) and data.get("code") == "OK" and isinstance(data.get("data"), dict)


def is_listing_payload(data: Any) -> bool:
    return _is_ok(data) and "total" in data["data"] and isinstance(data["data"].get("list"), list)


def is_detail_payload(data: Any) -> bool:
    return _is_ok(data) and isinstance(data["data"].get("skus"), list)


LISTING_FILTER = PayloadFilter(LISTING_ENDPOINT_MARKER, is_listing_payload)
DETAIL_FILTER = PayloadFilter(DETAIL_ENDPOINT_MARKER, is_detail_payload)


def parse_observation(raw: dict) -> Observation:
    sku = _first_sku(raw)
    stock = sku.get("stock") if isinstance(sku.get("stock"), dict) else {}
    images = raw.get("bannerImages")
    available = raw.get("isAvailable")
    return Observation(
        id=str(raw["id"]) if raw.get("id") not in (None, "") else None,
        title=(raw.get("title") or "").strip() or None,
        price=_to_int(sku.get("price")),
        stock=_to_int(stock.get("onlineStock")),
        image_url=images[0] if isinstance(images, list) and images else None,
        item_type=raw.get("type"),
        available=available if isinstance(available, bool) else None,
    )


def parse_listing_payload(data: Any) -> Tuple[int, List[Observation]]:
    """Return ``(total_pages, observations)`` from a search response."""
    if not is_listing_payload(data):
        raise DataExtractionFailure("Response is not a search listing payload")
    body = data["data"]
    entries = [e for e in body["list"] if isinstance(e, dict)]
    total = _to_int(body.get("total")) or 0
    page_size = _to_int(body.get("pageSize")) or len(entries) or 1
    total_pages = max(1, math.ceil(total / page_size))
    return total_pages, [parse_observation(e) for e in entries]


def parse_detail_payload(data: Any) -> Tuple[bool, Optional[str]]:
    """Return ``(in_stock, image_url)`` from a product detail response."""
    if not is_detail_payload(data):
        raise DataExtractionFailure("Missing or malformed product detail payload")
    sku = _first_sku(data["data"])
    stock = sku.get("stock")
    online = _to_int(stock.get("onlineStock")) if isinstance(stock, dict) else None
    if online is None:
        raise DataExtractionFailure("Product detail payload has no stock count")
    return online > 0, sku.get("mainImage")


def persist_changes(store: ItemStore, state: SessionState) -> None:
    """Flush the changeset; the known map stays valid only if nothing changed."""
    logger.info("No. DB updates needed: %d", len(state.changeset))
    if state.changeset:
        store.bulk_upsert(list(state.changeset.values()))
        state.cache_valid = False
    else:
        state.cache_valid = True


def check_products(
    store: ItemStore,
    fetcher: PageFetcher,
    *,
    known: Optional[dict] = None,
    search_url: str = SEARCH_URL,
    max_page_fails: int = MAX_PAGE_FAILS,
    retry_delay: float = PAGE_RETRY_DELAY_SECONDS,
    sleep: Callable[[float], None] = time.sleep,
) -> SessionState:
    """Run one full catalog pass over every search results page.

    Page 1 is retried after ``retry_delay`` seconds and raises
    :class:`PageUnreachable` once it has failed ``max_page_fails`` times.
    Later pages are retried in place and skipped after the same number of
    failures. The fetcher is closed when the pass ends, successfully or not.
    """
    logger.info("New scrape session started")
    state = SessionState()
    if known is None:
        known = store.find_all()
        logger.info("Found %d existing products in the database", len(known))
    else:
        logger.info("Reusing cached product state (%d items)", len(known))
    state.known = known

    current = 1
    try:
        while current <= state.total_pages:
            url = build_search_url(current, search_url)
            logger.info("Scraping page %d/%d: %s", current, state.total_pages, url)
            try:
                payloads = fetcher.fetch_json(url, LISTING_FILTER)
                if not payloads:
                    raise DataExtractionFailure(f"No listing payload captured from {url}")
            except (PageUnreachable, DataExtractionFailure) as e:
                state.page_fails += 1
                logger.warning("Error on page %d: %s", current, e)

                if current == 1:
                    state.first_page_retries += 1
                    if state.first_page_retries >= max_page_fails:
                        raise PageUnreachable(
                            f"Failed to load page 1 after {state.first_page_retries} attempts",
                            url=url,
                        ) from e
                    logger.info(
                        "Retrying page 1 in %.0fs (attempt %d/%d)",
                        retry_delay, state.first_page_retries, max_page_fails,
                    )
                    sleep(retry_delay)
                    continue

                if state.page_fails >= max_page_fails:
                    logger.warning("Skipping page %d after %d failures", current, state.page_fails)
                    state.page_fails = 0
                    current += 1
                else:
                    logger.info("Retrying page %d (attempt %d/%d)", current, state.page_fails, max_page_fails)
                continue

            state.page_fails = 0
            state.total_pages, observations = parse_listing_payload(payloads[-1])
            reconcile_batch(state, observations, fallback_url=url)
            current += 1
    finally:
        fetcher.close()

    persist_changes(store, state)
    logger.info("Catalog pass finished: %d alert(s), %d page(s)", len(state.alerts), state.total_pages)
    return state


def check_hot_products(
    store: ItemStore,
    fetcher: PageFetcher,
    *,
    threshold: float = FAIL_THRESHOLD,
) -> SessionState:
    """Probe every priority item's detail page for a stock flip.

    A probe that fails to load or yields no usable payload is counted and
    skipped. Once failed/total exceeds ``threshold`` the remaining items are
    not probed and :class:`HighTrafficDetected` is raised, carrying the
    alerts gathered so far. Changes made before that point are persisted.
    """
    state = SessionState()
    items: List[Item] = store.find_priority()
    total = len(items)
    logger.info("Probing %d priority item(s)", total)

    failed = 0
    try:
        for item in items:
            state.known[item.id] = item
            logger.info("Visiting: %s", item.url)
            try:
                payloads = fetcher.fetch_json(item.url, DETAIL_FILTER)
                in_stock, image_url = parse_detail_payload(payloads[-1] if payloads else None)
            except (PageUnreachable, DataExtractionFailure) as e:
                failed += 1
                logger.warning("Couldn't extract data for %s (%d/%d failed): %s", item.name, failed, total, e)
                if failed / total > threshold:
                    raise HighTrafficDetected(
                        f"High traffic or site failure detected: {failed}/{total} priority probes failed",
                        alerts=state.alerts,
                    ) from e
                continue

            reconcile_stock(state, item, in_stock, image_url)
    except HighTrafficDetected:
        # The traffic signal must reach the controller even if the store fails.
        try:
            persist_changes(store, state)
        except Exception:
            logger.exception("Error saving %d change(s) before traffic cooldown", len(state.changeset))
        raise

    persist_changes(store, state)
    return state


__all__ = [
    "LISTING_FILTER",
    "DETAIL_FILTER",
    "is_listing_payload",
    "is_detail_payload",
    "parse_observation",
    "parse_listing_payload",
    "parse_detail_payload",
    "persist_changes",
    "check_products",
    "check_hot_products",
]
