"""Diff freshly observed catalog data against known item state.

Everything a pass accumulates lives in a :class:`SessionState` created per
pass; nothing is kept at module level.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional, Set

from .models import AlertEvent, ChangeKind, Item, Observation
from .urls import build_item_url

logger = logging.getLogger(__name__)


@dataclass
class SessionState:
    known: Dict[str, Item] = field(default_factory=dict)
    alerts: List[AlertEvent] = field(default_factory=list)
    changeset: Dict[str, Item] = field(default_factory=dict)
    created: Set[str] = field(default_factory=set)
    page_fails: int = 0
    first_page_retries: int = 0
    total_pages: int = 1
    cache_valid: bool = False


def _alert(state: SessionState, item: Item, kind: ChangeKind, image_url: Optional[str]) -> None:
    state.alerts.append(AlertEvent(item=replace(item), kind=kind, image_url=image_url))


def _update_field(state: SessionState, item: Item, attr: str, value: Any) -> bool:
    """Set ``item.attr`` and record the item in the changeset if it differs."""
    old = getattr(item, attr)
    if old == value:
        return False
    logger.debug("Updated %s for %s from %r to %r", attr, item.name, old, value)
    setattr(item, attr, value)
    state.changeset[item.id] = item
    return True


def reconcile_stock(state: SessionState, item: Item, in_stock: bool, image_url: Optional[str] = None) -> None:
    """Record a stock transition for a known item: RESTOCK or SOLD_OUT."""
    was_in_stock = item.in_stock
    if not _update_field(state, item, "in_stock", in_stock):
        return
    kind = ChangeKind.RESTOCK if in_stock else ChangeKind.SOLD_OUT
    _alert(state, item, kind, image_url)
    logger.info(
        "%s detected: %s (in_stock %s -> %s)",
        "Restock" if kind is ChangeKind.RESTOCK else "Sold out",
        item.name, was_in_stock, in_stock,
    )


def reconcile_observation(state: SessionState, obs: Observation, fallback_url: str) -> None:
    """Classify one listing record and fold it into the session state.

    ``fallback_url`` is used for secret drops, whose detail URL cannot be
    rebuilt from id and title.
    """
    item_id = str(obs.id) if obs.id not in (None, "") else None
    url = fallback_url if obs.is_secret else build_item_url(item_id, obs.title)
    in_stock = obs.in_stock
    item = state.known.get(item_id) if item_id else None

    if item is None:
        # Gifts with purchase and promo tiles lack a real id, name or price.
        if not item_id or not obs.title or not obs.price or obs.price <= 0 or not url:
            logger.debug("Skipping non-product listing entry: %r", obs)
            return
        item = Item(
            id=item_id,
            name=obs.title,
            price_minor=int(obs.price),
            in_stock=bool(in_stock),
            url=url,
        )
        state.known[item_id] = item
        state.changeset[item_id] = item
        state.created.add(item_id)
        _alert(state, item, ChangeKind.NEW_ITEM, obs.image_url)
        logger.info("Added new product: %s (id=%s)", item.name, item.id)
        return

    if item_id in state.created:
        # Repeat listing of an item first seen this pass: its NEW_ITEM alert
        # stands alone, so later differences update the record silently.
        if in_stock is not None:
            _update_field(state, item, "in_stock", bool(in_stock))
        if obs.price is not None and obs.price > 0:
            _update_field(state, item, "price_minor", int(obs.price))
        if url:
            _update_field(state, item, "url", url)
        return

    if in_stock is not None:
        reconcile_stock(state, item, in_stock, obs.image_url)

    if obs.price is not None and obs.price > 0:
        old_price = item.price_minor
        if _update_field(state, item, "price_minor", int(obs.price)):
            _alert(state, item, ChangeKind.PRICE_CHANGE, obs.image_url)
            logger.info("Price change for %s: %d -> %d", item.name, old_price, item.price_minor)

    if url:
        _update_field(state, item, "url", url)


def reconcile_batch(state: SessionState, observations: List[Observation], fallback_url: str) -> None:
    for obs in observations:
        try:
            reconcile_observation(state, obs, fallback_url)
        except (TypeError, ValueError):
            logger.exception("Error processing listing %s (id=%s)", obs.title, obs.id)


__all__ = ["SessionState", "reconcile_stock", "reconcile_observation", "reconcile_batch"]
