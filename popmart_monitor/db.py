"""SQLite persistence layer for the catalog monitor."""

from __future__ import annotations

import datetime as _dt
import logging
import sqlite3
from pathlib import Path
from typing import Dict, Iterable, List

from .config import SQLITE_DB_PATH
from .models import Item

logger = logging.getLogger(__name__)

_COLUMNS = "item_id, name, price_minor, in_stock, url, is_priority"


def _utcnow() -> str:
    return _dt.datetime.now(_dt.timezone.utc).isoformat()


def _row_to_item(row: tuple) -> Item:
    item_id, name, price_minor, in_stock, url, is_priority = row
    return Item(
        id=str(item_id),
        name=name,
        price_minor=int(price_minor),
        in_stock=bool(in_stock),
        url=url,
        is_priority=bool(is_priority),
    )


class ItemStore:
    """Items keyed by their external id.

    ``bulk_upsert`` creates missing rows and overwrites name, price, stock
    and url on existing ones. ``is_priority`` is curated by hand and only
    changes through :meth:`set_priority`.
    """

    def __init__(self, db_path: str = SQLITE_DB_PATH) -> None:
        self.db_path = db_path

    def _get_connection(self) -> sqlite3.Connection:
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        return sqlite3.connect(self.db_path)

    def init_db(self) -> None:
        """Create tables if they don't exist."""
        with self._get_connection() as conn:
            conn.execute("""
              CREATE TABLE IF NOT EXISTS items (
                item_id     TEXT PRIMARY KEY,
                name        TEXT NOT NULL,
                price_minor INTEGER NOT NULL,
                in_stock    INTEGER NOT NULL,
                url         TEXT NOT NULL,
                is_priority INTEGER NOT NULL DEFAULT 0,
                created_at  TEXT NOT NULL,
                updated_at  TEXT NOT NULL
              )
            """)
            conn.execute("CREATE INDEX IF NOT EXISTS idx_items_priority ON items(is_priority)")
            conn.commit()

    def find_all(self) -> Dict[str, Item]:
        """Fetch every stored item, keyed by id."""
        with self._get_connection() as conn:
            cur = conn.execute(f"SELECT {_COLUMNS} FROM items")
            return {str(row[0]): _row_to_item(row) for row in cur.fetchall()}

    def find_priority(self) -> List[Item]:
        with self._get_connection() as conn:
            cur = conn.execute(f"SELECT {_COLUMNS} FROM items WHERE is_priority = 1 ORDER BY item_id")
            return [_row_to_item(row) for row in cur.fetchall()]

    def bulk_upsert(self, items: Iterable[Item]) -> int:
        """Insert or update all items in one transaction; returns row count."""
        now = _utcnow()
        rows = [
            (
                str(it.id),
                str(it.name),
                int(it.price_minor),
                int(bool(it.in_stock)),
                str(it.url),
                int(bool(it.is_priority)),
                now,   # created_at
                now,   # updated_at
            )
            for it in items
        ]
        if not rows:
            return 0

        with self._get_connection() as conn:
            conn.executemany("""
                INSERT INTO items (
                  item_id, name, price_minor, in_stock, url,
                  is_priority, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(item_id) DO UPDATE SET
                  name        = excluded.name,
                  price_minor = excluded.price_minor,
                  in_stock    = excluded.in_stock,
                  url         = excluded.url,
                  updated_at  = excluded.updated_at
            """, rows)
            conn.commit()
        logger.info("Bulk upsert wrote %d item(s)", len(rows))
        return len(rows)

    def set_priority(self, item_ids: Iterable[str], priority: bool = True) -> int:
        """Flag or unflag items for direct probing; returns rows updated."""
        now = _utcnow()
        with self._get_connection() as conn:
            cur = conn.executemany(
                "UPDATE items SET is_priority = ?, updated_at = ? WHERE item_id = ?",
                [(int(priority), now, str(pid)) for pid in item_ids],
            )
            conn.commit()
            return cur.rowcount


__all__ = ["ItemStore"]
