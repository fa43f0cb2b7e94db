"""Exceptions raised by the monitor.

Only the controller in :mod:`popmart_monitor.main` decides whether a pass
failure is retried, cooled down or fatal.
"""

from __future__ import annotations

from typing import List, TYPE_CHECKING

if TYPE_CHECKING:
    from .models import AlertEvent


class MonitorError(Exception):
    """Base class for monitor failures."""


class PageUnreachable(MonitorError):
    """Navigation to a page failed or timed out."""

    def __init__(self, message: str, url: str | None = None) -> None:
        super().__init__(message)
        self.url = url


class DataExtractionFailure(MonitorError):
    """A page loaded but the expected JSON payload was missing or malformed."""


class HighTrafficDetected(MonitorError):
    """Too many priority probes failed; the site is probably under load.

    Alerts collected before the threshold tripped travel with the exception
    so they can still be delivered.
    """

    def __init__(self, message: str, alerts: List["AlertEvent"] | None = None) -> None:
        super().__init__(message)
        self.alerts = list(alerts or [])


class FatalMonitorFailure(MonitorError):
    """Consecutive pass failures reached the configured maximum."""


__all__ = [
    "MonitorError",
    "PageUnreachable",
    "DataExtractionFailure",
    "HighTrafficDetected",
    "FatalMonitorFailure",
]
