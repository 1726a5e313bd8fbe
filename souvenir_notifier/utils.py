"""Helper utilities.

This module centralises common helper functions such as creating a
configured HTTP session and applying retry policies to network calls.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Optional

import requests
from requests import Response
from tenacity import (after_log, retry, retry_if_exception,
                      stop_after_attempt, wait_exponential)

from . import config


logger = logging.getLogger(__name__)


def get_http_session() -> requests.Session:
    """Return a new HTTP session with sensible defaults.

    Caller is responsible for closing the session or letting it be
    garbage collected.
    """
    session = requests.Session()
    session.headers.update(
        {
            "User-Agent": "Mozilla/5.0 (compatible; SouvenirNotifier/1.0; +https://github.com/)",
            "Accept": "application/json, text/javascript, */*; q=0.01",
        }
    )
    return session


class HTTPError(Exception):
    """Raised when an HTTP request fails after retries."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


def _raise_for_status(resp: Response) -> None:
    try:
        resp.raise_for_status()
    except requests.RequestException as e:
        raise HTTPError(str(e), status_code=resp.status_code) from e


def is_transient(exc: BaseException) -> bool:
    """Network errors, timeouts, 5xx and 429 are worth another attempt."""
    if isinstance(exc, HTTPError):
        return exc.status_code is None or exc.status_code >= 500 or exc.status_code == 429
    return isinstance(exc, requests.RequestException)


def retryable_request(method: Callable[..., Response]) -> Callable[..., Response]:
    """Decorator factory to apply retry logic to HTTP calls.

    The decorated function must accept a `requests.Session` as its first
    argument, followed by URL and optional kwargs, and return a
    `requests.Response`.  Transient failures (see :func:`is_transient`) are
    retried up to ``HTTP_RETRY_ATTEMPTS`` times with exponential back-off
    between 1 and 10 seconds.  Client errors are raised immediately.
    """

    @retry(
        reraise=True,
        stop=stop_after_attempt(max(1, config.HTTP_RETRY_ATTEMPTS)),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        retry=retry_if_exception(is_transient),
        after=after_log(logger, logging.WARNING),
    )
    def wrapper(session: requests.Session, url: str, **kwargs: Any) -> Response:
        kwargs.setdefault("timeout", config.REQUEST_TIMEOUT_SECONDS)
        response = method(session, url, **kwargs)
        if response.status_code >= 500:
            raise HTTPError(f"Server returned status {response.status_code}", status_code=response.status_code)
        _raise_for_status(response)
        return response

    return wrapper


def check_connectivity(url: Optional[str] = None, session: Optional[requests.Session] = None) -> bool:
    """Return True when the connectivity probe answers with 2xx.

    An empty probe URL disables the check.
    """
    url = config.CONNECTIVITY_CHECK_URL if url is None else url
    if not url:
        return True
    close_session = False
    if session is None:
        session = get_http_session()
        close_session = True
    try:
        resp = session.get(url, timeout=config.REQUEST_TIMEOUT_SECONDS)
        return 200 <= resp.status_code < 300
    except requests.RequestException as e:
        logger.debug("Connectivity probe to %s failed: %s", url, e)
        return False
    finally:
        if close_session:
            session.close()


__all__ = ["get_http_session", "retryable_request", "HTTPError", "is_transient", "check_connectivity"]
