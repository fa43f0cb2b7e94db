"""Helper utilities.

This module centralises the HTTP session used for webhook posts and direct
page fetches, and the retry policy applied to webhook calls.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Optional

import requests
from requests import Response
from tenacity import (RetryCallState, after_log, retry, retry_if_exception_type,
                      stop_after_attempt, wait_exponential)


logger = logging.getLogger(__name__)

BROWSER_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/124.0 Safari/537.36"
)


def get_http_session() -> requests.Session:
    """Return a new HTTP session with browser-like default headers.

    Caller is responsible for closing the session.
    """
    session = requests.Session()
    session.headers.update(
        {
            "User-Agent": BROWSER_USER_AGENT,
            "Accept": "application/json, text/html;q=0.9, */*;q=0.8",
            "Accept-Language": "en-US,en;q=0.9",
        }
    )
    return session


class HTTPError(Exception):
    """Raised when an HTTP request is rejected or fails after retries."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class TransientHTTPError(HTTPError):
    """Server error or rate limit; the request may succeed if repeated."""

    def __init__(self, message: str, status_code: Optional[int] = None, retry_after: Optional[float] = None):
        super().__init__(message, status_code)
        self.retry_after = retry_after


MAX_ATTEMPTS = 5
MAX_RETRY_AFTER_SECONDS = 60.0

_backoff = wait_exponential(multiplier=1, min=1, max=10)


def _retry_after(resp: Response) -> Optional[float]:
    value = resp.headers.get("Retry-After")
    if value is None:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        return None


def check_response(resp: Response) -> Response:
    """Map a webhook response status onto the retry policy.

    429 and 5xx raise :class:`TransientHTTPError` (retried); any other 4xx
    raises :class:`HTTPError`, which is not.
    """
    status = resp.status_code
    if status == 429 or status >= 500:
        raise TransientHTTPError(
            f"Server returned status {status}", status_code=status, retry_after=_retry_after(resp)
        )
    if status >= 400:
        raise HTTPError(f"Request rejected with status {status}: {resp.text[:200]}", status_code=status)
    return resp


def _wait(retry_state: RetryCallState) -> float:
    # Discord rate limits say how long to back off; otherwise use exponential.
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    retry_after = getattr(exc, "retry_after", None)
    if retry_after is not None:
        return min(retry_after, MAX_RETRY_AFTER_SECONDS)
    return _backoff(retry_state)


def retryable_request(method: Callable[..., Response]) -> Callable[..., Response]:
    """Decorator applying the webhook retry policy to an HTTP call.

    The decorated function takes a `requests.Session`, a URL and keyword
    arguments and returns a `requests.Response`. Network errors, 5xx and
    429 responses are retried up to ``MAX_ATTEMPTS`` times. Rate limits wait
    for the server's ``Retry-After``; everything else backs off
    exponentially between 1 and 10 seconds. Other 4xx responses, such as a
    deleted webhook, raise `HTTPError` at once.
    """

    @retry(
        reraise=True,
        stop=stop_after_attempt(MAX_ATTEMPTS),
        wait=_wait,
        retry=(
            retry_if_exception_type(requests.RequestException)
            | retry_if_exception_type(TransientHTTPError)
        ),
        after=after_log(logger, logging.WARNING),
    )
    def wrapper(session: requests.Session, url: str, **kwargs: Any) -> Response:
        return check_response(method(session, url, **kwargs))

    return wrapper


__all__ = [
    "BROWSER_USER_AGENT",
    "get_http_session",
    "check_response",
    "retryable_request",
    "HTTPError",
    "TransientHTTPError",
]
