"""Data classes shared by the scraper, reconciler, store and notifier."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional


class ChangeKind(str, Enum):
    NEW_ITEM = "new_item"
    RESTOCK = "restock"
    SOLD_OUT = "sold_out"
    PRICE_CHANGE = "price_change"
    OTHER = "other"


@dataclass
class Item:
    id: str
    name: str
    price_minor: int
    in_stock: bool
    url: str
    is_priority: bool = False


@dataclass
class Observation:
    """One listing record as returned by the search endpoint."""

    id: Optional[str]
    title: Optional[str]
    price: Optional[int]
    stock: Optional[int]
    image_url: Optional[str] = None
    item_type: Optional[str] = None
    available: Optional[bool] = None

    @property
    def in_stock(self) -> Optional[bool]:
        if self.stock is not None:
            return self.stock > 0
        return self.available

    @property
    def is_secret(self) -> bool:
        # Pop Now / secret drops have no deterministic detail page.
        return (self.item_type or "").lower() == "secret"


@dataclass(frozen=True)
class AlertEvent:
    item: Item
    kind: ChangeKind
    image_url: Optional[str] = None


__all__ = ["ChangeKind", "Item", "Observation", "AlertEvent"]
