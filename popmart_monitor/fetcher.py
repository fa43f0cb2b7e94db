"""Page fetchers.

A fetcher navigates to a URL and returns the JSON payloads observed during
that single navigation which match a :class:`PayloadFilter`. Two backends:

- :class:`BrowserFetcher` drives headless Chromium through Playwright and
  sniffs XHR responses, the way the storefront's own frontend loads data.
- :class:`HttpFetcher` fetches the URL with ``requests``; JSON responses are
  returned directly and HTML pages are mined for embedded JSON blobs.

Callers treat the last payload in the returned list as authoritative.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Callable, Iterator, List, Optional, Protocol, Sequence

import requests
from bs4 import BeautifulSoup
from playwright.sync_api import Error as PWError
from playwright.sync_api import TimeoutError as PWTimeoutError
from playwright.sync_api import sync_playwright

from .config import BLOCKED_DOMAINS, BROWSER_HEADLESS, PAGE_TIMEOUT_MS
from .errors import PageUnreachable
from .utils import BROWSER_USER_AGENT, get_http_session

logger = logging.getLogger(__name__)

# Resource types that never carry catalog data.
BLOCKED_RESOURCE_TYPES = frozenset({"image", "stylesheet", "font", "media"})

_LAUNCH_ARGS = [
    "--disable-gpu",
    "--disable-dev-shm-usage",
    "--disable-setuid-sandbox",
    "--no-sandbox",
    "--no-zygote",
    "--disable-accelerated-2d-canvas",
    "--disable-features=site-per-process",
    "--disable-infobars",
    "--window-size=1920,1080",
]


@dataclass(frozen=True)
class PayloadFilter:
    """Which responses count: URL substring plus a check on the decoded body."""

    url_contains: str
    accept: Callable[[Any], bool]

    def matches_url(self, url: str) -> bool:
        return self.url_contains in (url or "")


class PageFetcher(Protocol):
    def fetch_json(self, url: str, payload_filter: PayloadFilter) -> List[Any]:
        ...

    def close(self) -> None:
        ...


def should_block(url: str, resource_type: str, blocked_domains: Sequence[str]) -> bool:
    if resource_type in BLOCKED_RESOURCE_TYPES:
        return True
    return any(domain in url for domain in blocked_domains)


def _iter_dicts(o: Any) -> Iterator[dict]:
    """Yield all dicts inside arbitrary JSON (list/dict scalars)."""
    if isinstance(o, dict):
        yield o
        for v in o.values():
            yield from _iter_dicts(v)
    elif isinstance(o, list):
        for v in o:
            yield from _iter_dicts(v)


def extract_embedded_json(html: str) -> List[Any]:
    """Return every JSON document embedded in ``<script>`` tags of a page.

    Covers Next.js ``__NEXT_DATA__`` and any ``application/json`` or
    ``application/ld+json`` script. Blobs that fail to parse are skipped.
    """
    soup = BeautifulSoup(html, "html.parser")
    blobs: list[Any] = []
    for tag in soup.find_all("script"):
        script_type = (tag.get("type") or "").lower()
        if tag.get("id") != "__NEXT_DATA__" and "json" not in script_type:
            continue
        raw = (tag.string or "").strip()
        if not raw:
            continue
        try:
            blobs.append(json.loads(raw))
        except ValueError:
            logger.debug("Skipping unparsable inline JSON (%d chars)", len(raw))
    return blobs


class BrowserFetcher:
    """Headless Chromium fetcher, launched lazily and reused until closed."""

    def __init__(
        self,
        *,
        headless: bool = BROWSER_HEADLESS,
        timeout_ms: int = PAGE_TIMEOUT_MS,
        blocked_domains: Sequence[str] = tuple(BLOCKED_DOMAINS),
    ) -> None:
        self.headless = headless
        self.timeout_ms = timeout_ms
        self.blocked_domains = tuple(blocked_domains)
        self._playwright = None
        self._browser = None
        self._page = None

    def _ensure_page(self):
        if self._page is not None:
            return self._page

        logger.info("Launching headless browser (headless=%s)", self.headless)
        self._playwright = sync_playwright().start()
        self._browser = self._playwright.chromium.launch(headless=self.headless, args=_LAUNCH_ARGS)
        ctx = self._browser.new_context(
            user_agent=BROWSER_USER_AGENT,
            locale="en-US",
            viewport={"width": 1920, "height": 1080},
        )
        page = ctx.new_page()
        page.route("**/*", self._route)
        self._page = page
        return page

    def _route(self, route) -> None:
        req = route.request
        if should_block(req.url, req.resource_type, self.blocked_domains):
            route.abort()
        else:
            route.continue_()

    def fetch_json(self, url: str, payload_filter: PayloadFilter) -> List[Any]:
        page = self._ensure_page()
        captured: list = []

        def _on_response(resp) -> None:
            ct = (resp.headers.get("content-type") or "").lower()
            if "application/json" in ct and payload_filter.matches_url(resp.url):
                captured.append(resp)

        page.on("response", _on_response)
        try:
            page.goto(url, wait_until="networkidle", timeout=self.timeout_ms)
        except PWTimeoutError as e:
            raise PageUnreachable(f"Timed out after {self.timeout_ms}ms loading {url}", url=url) from e
        except PWError as e:
            raise PageUnreachable(f"Navigation to {url} failed: {e}", url=url) from e
        finally:
            page.remove_listener("response", _on_response)

        payloads: list[Any] = []
        for resp in captured:
            try:
                data = resp.json()
            except (PWError, ValueError) as e:
                logger.warning("Failed to parse JSON from %s: %s", resp.url, e)
                continue
            if payload_filter.accept(data):
                payloads.append(data)
        logger.debug("Captured %d matching payload(s) from %s", len(payloads), url)
        return payloads

    def close(self) -> None:
        """Tear down the browser; the next fetch launches a fresh one."""
        browser, pw = self._browser, self._playwright
        self._page = None
        self._browser = None
        self._playwright = None
        if browser is not None:
            try:
                browser.close()
            except PWError:
                logger.warning("Browser did not close cleanly", exc_info=True)
        if pw is not None:
            try:
                pw.stop()
            except PWError:
                logger.warning("Playwright did not stop cleanly", exc_info=True)


class HttpFetcher:
    """Direct HTTP fetcher for JSON endpoints or server-rendered pages."""

    def __init__(
        self,
        *,
        timeout_ms: int = PAGE_TIMEOUT_MS,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.timeout_ms = timeout_ms
        self._session = session

    def _ensure_session(self) -> requests.Session:
        if self._session is None:
            self._session = get_http_session()
        return self._session

    def fetch_json(self, url: str, payload_filter: PayloadFilter) -> List[Any]:
        session = self._ensure_session()
        try:
            resp = session.get(url, timeout=self.timeout_ms / 1000)
            resp.raise_for_status()
        except requests.Timeout as e:
            raise PageUnreachable(f"Timed out after {self.timeout_ms}ms loading {url}", url=url) from e
        except requests.RequestException as e:
            raise PageUnreachable(f"Request to {url} failed: {e}", url=url) from e

        ct = (resp.headers.get("content-type") or "").lower()
        if "application/json" in ct:
            try:
                data = resp.json()
            except ValueError as e:
                logger.warning("Failed to parse JSON from %s: %s", url, e)
                return []
            return [data] if payload_filter.accept(data) else []

        return [
            d
            for blob in extract_embedded_json(resp.text or "")
            for d in _iter_dicts(blob)
            if payload_filter.accept(d)
        ]

    def close(self) -> None:
        if self._session is not None:
            self._session.close()
            self._session = None


def create_fetcher(backend: str) -> PageFetcher:
    if backend == "http":
        return HttpFetcher()
    if backend == "browser":
        return BrowserFetcher()
    raise ValueError(f"Unknown fetcher backend: {backend!r}")


__all__ = [
    "BLOCKED_RESOURCE_TYPES",
    "PayloadFilter",
    "PageFetcher",
    "BrowserFetcher",
    "HttpFetcher",
    "should_block",
    "extract_embedded_json",
    "create_fetcher",
]
