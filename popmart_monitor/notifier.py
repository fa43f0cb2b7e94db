"""Discord webhook notifier.

Product alerts go to the channel selected by the run mode. Status messages
(startup, high traffic, fatal failure) go to the operator channel.
"""
from __future__ import annotations

import datetime as _dt
import logging
from typing import Optional

import requests

from .config import DISCORD_TEST_WEBHOOK_URL, DISCORD_WEBHOOK_URL
from .models import AlertEvent, ChangeKind
from .utils import get_http_session, retryable_request

logger = logging.getLogger(__name__)

# Discord embed colours.
_COLOURS = {
    ChangeKind.NEW_ITEM: 0x5865F2,
    ChangeKind.RESTOCK: 0x57F287,
    ChangeKind.SOLD_OUT: 0xED4245,
    ChangeKind.PRICE_CHANGE: 0xFEE75C,
    ChangeKind.OTHER: 0x99AAB5,
}


@retryable_request
def _post(session: requests.Session, url: str, **kwargs) -> requests.Response:
    return session.post(url, **kwargs)


def _timestamp() -> str:
    return _dt.datetime.now(_dt.timezone.utc).isoformat()


def format_price(price_minor: int) -> str:
    """Render a price in cents as dollars, e.g. 2500 -> "$25.00"."""
    dollars, cents = divmod(int(price_minor), 100)
    return f"${dollars}.{cents:02d}"


def alert_message(kind: ChangeKind, name: str) -> str:
    if kind is ChangeKind.RESTOCK:
        return f"🔥 **{name}** is back in stock!"
    if kind is ChangeKind.NEW_ITEM:
        return f"‼️ New product: **{name}**"
    if kind is ChangeKind.SOLD_OUT:
        return f"**{name}** just sold out."
    if kind is ChangeKind.PRICE_CHANGE:
        return f"💲 Price change: **{name}**"
    if kind is ChangeKind.OTHER:
        return f"Update for **{name}**"
    raise ValueError(f"Unhandled change kind: {kind!r}")


def build_alert_payload(event: AlertEvent) -> dict:
    item = event.item
    embed = {
        "title": item.name or "Unknown product",
        "url": item.url,
        "description": "\n".join([
            f"Price: {format_price(item.price_minor)}",
            f"Stock: {'In stock' if item.in_stock else 'Sold out'}",
        ]),
        "color": _COLOURS[event.kind],
        "timestamp": _timestamp(),
    }
    if event.image_url:
        embed["image"] = {"url": event.image_url}
    return {"content": alert_message(event.kind, item.name), "embeds": [embed]}


def _send(payload: dict, webhook_url: Optional[str], session: Optional[requests.Session], what: str) -> None:
    if not webhook_url:
        logger.error("Discord webhook URL is not configured. Cannot send %s.", what)
        return

    close_session = False
    if session is None:
        session = get_http_session()
        close_session = True
    try:
        logger.info("Sending %s", what)
        _post(session, webhook_url, json=payload)
    finally:
        if close_session:
            session.close()


def send_alert(
    event: AlertEvent,
    webhook_url: Optional[str] = None,
    session: Optional[requests.Session] = None,
) -> None:
    if webhook_url is None:
        webhook_url = DISCORD_WEBHOOK_URL
    payload = build_alert_payload(event)
    _send(payload, webhook_url, session, f"{event.kind.value} alert for {event.item.name} (id={event.item.id})")


def send_traffic_alert(webhook_url: Optional[str] = None, session: Optional[requests.Session] = None) -> None:
    """Tell subscribers the site is struggling, which usually means a drop."""
    if webhook_url is None:
        webhook_url = DISCORD_WEBHOOK_URL
    payload = {
        "content": "🚨 High traffic detected on the site. A restock may be in progress!",
        "embeds": [{
            "title": "High traffic",
            "description": "Priority product pages are failing to load. Check the store manually.",
            "color": 0xE67E22,
            "timestamp": _timestamp(),
        }],
    }
    _send(payload, webhook_url, session, "high traffic alert")


def send_fatal_alert(
    reason: str,
    webhook_url: Optional[str] = None,
    session: Optional[requests.Session] = None,
) -> None:
    if webhook_url is None:
        webhook_url = DISCORD_TEST_WEBHOOK_URL
    payload = {
        "content": "🛑 Monitor stopped after repeated failures. Manual attention needed.",
        "embeds": [{
            "title": "Monitor Error",
            "description": reason[:4000],
            "color": _COLOURS[ChangeKind.SOLD_OUT],
            "timestamp": _timestamp(),
        }],
    }
    _send(payload, webhook_url, session, "fatal operator alert")


def send_startup_alert(webhook_url: Optional[str] = None, session: Optional[requests.Session] = None) -> None:
    if webhook_url is None:
        webhook_url = DISCORD_TEST_WEBHOOK_URL
    _send({"content": "Bot now running ✅"}, webhook_url, session, "startup status alert")


__all__ = [
    "format_price",
    "alert_message",
    "build_alert_payload",
    "send_alert",
    "send_traffic_alert",
    "send_fatal_alert",
    "send_startup_alert",
]
