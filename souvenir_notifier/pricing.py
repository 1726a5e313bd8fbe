"""Steam Community Market price lookup."""

from __future__ import annotations

import json
import logging
from typing import Any, Optional

import requests

from .config import PRICE_CURRENCY, STEAM_PRICE_URL
from .utils import HTTPError, get_http_session, retryable_request

logger = logging.getLogger(__name__)

# Sent in place of a price when the market has none for us.
PRICE_UNAVAILABLE = "0"


@retryable_request
def _get(session: requests.Session, url: str, **kwargs: Any) -> requests.Response:
    return session.get(url, **kwargs)


def lookup_price(market_key: str, *, session: Optional[requests.Session] = None) -> str:
    """Return the lowest listed price for ``market_key`` (e.g. ``"1,23€"``).

    Falls back to the median price, then to :data:`PRICE_UNAVAILABLE`.
    Never raises for lookup failures.
    """
    close_session = False
    if session is None:
        session = get_http_session()
        close_session = True

    try:
        resp = _get(
            session,
            STEAM_PRICE_URL,
            params={"currency": PRICE_CURRENCY, "appid": 730, "market_hash_name": market_key},
        )
        data = resp.json()
    except (HTTPError, requests.RequestException, ValueError, json.JSONDecodeError) as e:
        logger.error("Error getting price for %s: %s", market_key, e)
        return PRICE_UNAVAILABLE
    finally:
        if close_session:
            session.close()

    if not isinstance(data, dict) or not data.get("success"):
        logger.error("Error getting price for %s: %r", market_key, data)
        return PRICE_UNAVAILABLE

    price = data.get("lowest_price") or data.get("median_price")
    if not price:
        logger.warning("No listings for %s", market_key)
        return PRICE_UNAVAILABLE
    logger.debug("Got price for %s: %s", market_key, price)
    return str(price)


def humanize_price(price: str) -> str:
    """'1,23€' -> '1,23 euros', '$1.23' -> '1.23 dollars' for log lines."""
    if "€" in price:
        return price.replace("€", "").strip() + " euros"
    if "$" in price:
        return price.replace("$", "").strip() + " dollars"
    return price


__all__ = ["PRICE_UNAVAILABLE", "lookup_price", "humanize_price"]
