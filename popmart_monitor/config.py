"""Configuration loader.

Reads environment variables and `.env` to configure the service.
"""

from __future__ import annotations

import os
from typing import Optional, List
from pathlib import Path

from dotenv import load_dotenv

# Load variables from a .env file if present (project root).
load_dotenv(dotenv_path=Path(__file__).resolve().parents[1] / ".env")


def _get_env(name: str, default: Optional[str] = None) -> Optional[str]:
    return os.environ.get(name, default)


def _parse_bool(value: Optional[str], default: bool = False) -> bool:
    if value is None:
        return default
    return value.lower() in ("1", "true", "yes")


def _parse_int(value: Optional[str], default: int) -> int:
    try:
        return int(value) if value is not None else default
    except ValueError:
        return default


def _parse_float(value: Optional[str], default: float) -> float:
    try:
        return float(value) if value is not None else default
    except ValueError:
        return default


def _get_list(name: str, default: str = "") -> list[str]:
    raw = _get_env(name, default) or ""
    return [s.strip() for s in raw.split(",") if s.strip()]


# ---- Notifications -----------------------------------------------------------

# Channel webhook used in "prod" mode.
DISCORD_WEBHOOK_URL: Optional[str] = _get_env("DISCORD_WEBHOOK_URL")

# Channel webhook used in "test" mode and for operator/status messages.
DISCORD_TEST_WEBHOOK_URL: Optional[str] = _get_env("DISCORD_TEST_WEBHOOK_URL")

# ---- Storage & logging -------------------------------------------------------

SQLITE_DB_PATH: str = _get_env("SQLITE_DB_PATH", "monitor.db")

# Logging level: DEBUG, INFO, WARNING, ERROR.
LOG_LEVEL: str = _get_env("LOG_LEVEL", "INFO")

# ---- Catalog source ----------------------------------------------------------

# Paginated search page; "{page}" is replaced with the 1-based page number.
SEARCH_URL: str = _get_env("SEARCH_URL", "https://www.popmart.com/us/search/LABUBU?page={page}")

# Detail pages live at <PRODUCT_URL_BASE>/<id>/<slug>.
PRODUCT_URL_BASE: str = _get_env("PRODUCT_URL_BASE", "https://www.popmart.com/us/products")

# Substrings identifying the listing and detail JSON responses.
LISTING_ENDPOINT_MARKER: str = _get_env("LISTING_ENDPOINT_MARKER", "/shop/v1/search")
DETAIL_ENDPOINT_MARKER: str = _get_env("DETAIL_ENDPOINT_MARKER", "productDetails")

# ---- Page fetching -----------------------------------------------------------

# "browser" (Playwright, sniffs XHR responses) or "http" (plain requests).
FETCHER_BACKEND: str = (_get_env("FETCHER_BACKEND", "browser") or "browser").strip().lower()

BROWSER_HEADLESS: bool = _parse_bool(_get_env("BROWSER_HEADLESS", "true"), True)

# Requests to these hosts/paths are aborted by the browser fetcher.
BLOCKED_DOMAINS: List[str] = _get_list(
    "BLOCKED_DOMAINS",
    "google-analytics.com,quickcep.com,intercom.io,track/v1/track/track-events",
)

PAGE_TIMEOUT_MS: int = _parse_int(_get_env("PAGE_TIMEOUT_MS"), 100_000)
PAGE_RETRY_DELAY_SECONDS: float = _parse_float(_get_env("PAGE_RETRY_DELAY_SECONDS"), 30.0)
MAX_PAGE_FAILS: int = _parse_int(_get_env("MAX_PAGE_FAILS"), 3)

# Priority probing aborts once failed/total exceeds this ratio.
FAIL_THRESHOLD: float = _parse_float(_get_env("FAIL_THRESHOLD"), 0.5)

# ---- Schedule ----------------------------------------------------------------

MONITOR_TIMEZONE: str = _get_env("MONITOR_TIMEZONE", "America/Los_Angeles")

# Weekdays with expected drops, 0=Monday .. 6=Sunday.
HOT_WEEKDAYS: List[int] = [
    int(s) for s in _get_list("HOT_WEEKDAYS", "3") if s.isdigit()
]
HOT_WINDOW_START_HOUR: int = _parse_int(_get_env("HOT_WINDOW_START_HOUR"), 18)
HOT_WINDOW_END_HOUR: int = _parse_int(_get_env("HOT_WINDOW_END_HOUR"), 20)
PREP_LEAD_HOURS: int = _parse_int(_get_env("PREP_LEAD_HOURS"), 1)

THROTTLE_INTERVAL_SECONDS: float = _parse_float(_get_env("THROTTLE_INTERVAL_SECONDS"), 20.0)
STANDBY_INTERVAL_SECONDS: float = _parse_float(_get_env("STANDBY_INTERVAL_SECONDS"), 180.0)
SNOOZE_INTERVAL_SECONDS: float = _parse_float(_get_env("SNOOZE_INTERVAL_SECONDS"), 900.0)
MAX_JITTER_SECONDS: float = _parse_float(_get_env("MAX_JITTER_SECONDS"), 10.0)

# ---- Failure handling --------------------------------------------------------

RETRY_DELAY_SECONDS: float = _parse_float(_get_env("RETRY_DELAY_SECONDS"), 10.0)
HIGH_TRAFFIC_COOLDOWN_SECONDS: float = _parse_float(_get_env("HIGH_TRAFFIC_COOLDOWN_SECONDS"), 30 * 60.0)
MAX_CONSECUTIVE_FAILURES: int = _parse_int(_get_env("MAX_CONSECUTIVE_FAILURES"), 5)

# ---- Validation --------------------------------------------------------------

def validate() -> None:
    """Validate required configuration parameters."""
    if not DISCORD_TEST_WEBHOOK_URL:
        raise RuntimeError(
            "DISCORD_TEST_WEBHOOK_URL must be set. See .env.example for details."
        )
    if FETCHER_BACKEND not in ("browser", "http"):
        raise RuntimeError(f"FETCHER_BACKEND must be 'browser' or 'http', got {FETCHER_BACKEND!r}")
    if not 0 <= HOT_WINDOW_START_HOUR < HOT_WINDOW_END_HOUR <= 24:
        raise RuntimeError(
            "HOT_WINDOW_START_HOUR must be before HOT_WINDOW_END_HOUR (both within 0..24)."
        )
    if "{page}" not in SEARCH_URL:
        raise RuntimeError("SEARCH_URL must contain a {page} placeholder.")


__all__ = [
    # Notifications
    "DISCORD_WEBHOOK_URL",
    "DISCORD_TEST_WEBHOOK_URL",
    # Storage & logging
    "SQLITE_DB_PATH",
    "LOG_LEVEL",
    # Catalog source
    "SEARCH_URL",
    "PRODUCT_URL_BASE",
    "LISTING_ENDPOINT_MARKER",
    "DETAIL_ENDPOINT_MARKER",
    # Page fetching
    "FETCHER_BACKEND",
    "BROWSER_HEADLESS",
    "BLOCKED_DOMAINS",
    "PAGE_TIMEOUT_MS",
    "PAGE_RETRY_DELAY_SECONDS",
    "MAX_PAGE_FAILS",
    "FAIL_THRESHOLD",
    # Schedule
    "MONITOR_TIMEZONE",
    "HOT_WEEKDAYS",
    "HOT_WINDOW_START_HOUR",
    "HOT_WINDOW_END_HOUR",
    "PREP_LEAD_HOURS",
    "THROTTLE_INTERVAL_SECONDS",
    "STANDBY_INTERVAL_SECONDS",
    "SNOOZE_INTERVAL_SECONDS",
    "MAX_JITTER_SECONDS",
    # Failure handling
    "RETRY_DELAY_SECONDS",
    "HIGH_TRAFFIC_COOLDOWN_SECONDS",
    "MAX_CONSECUTIVE_FAILURES",
    # Helpers
    "validate",
]
