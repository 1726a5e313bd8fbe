"""Steam inventory fetcher.

Fetches the CS:GO inventory (appid 730, context 2) of a Steam account and
flattens the `assets` / `descriptions` pair returned by the community API
into one :class:`ObservedItem` per owned asset.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import requests

from .config import INVENTORY_COUNT, STEAM_INVENTORY_URL
from .utils import HTTPError, get_http_session, retryable_request

logger = logging.getLogger(__name__)


@dataclass
class ObservedItem:
    item_id: str
    display_name: str
    market_key: str
    description_lines: List[str] = field(default_factory=list)


class InventoryError(Exception):
    """Base class for every way an inventory fetch can fail."""

    def __init__(self, account_id: str, message: str) -> None:
        super().__init__(f"{account_id}: {message}")
        self.account_id = account_id


class PrivateInventoryError(InventoryError):
    """The inventory is private or otherwise inaccessible."""


class InventoryUnavailableError(InventoryError):
    """Network failure, timeout or server error after retries."""


class MalformedInventoryError(InventoryError):
    """The API answered, but not with a usable inventory document."""


@retryable_request
def _get(session: requests.Session, url: str, **kwargs: Any) -> requests.Response:
    """Thin wrapper around session.get with retry policy from utils.retryable_request."""
    return session.get(url, **kwargs)


def _build_inventory_endpoint(account_id: str) -> str:
    return STEAM_INVENTORY_URL.format(account_id=account_id)


def _description_lines(description: dict) -> List[str]:
    lines = []
    for entry in description.get("descriptions") or []:
        if isinstance(entry, dict) and isinstance(entry.get("value"), str):
            lines.append(entry["value"])
    return lines


def parse_inventory(account_id: str, payload: Any) -> List[ObservedItem]:
    """Turn a decoded inventory document into observed items.

    Items are emitted in asset order.  Each asset is joined to its
    description through the ``(classid, instanceid)`` pair and identified by
    its ``assetid``; assets without a description are skipped.
    """
    if payload is None:
        raise PrivateInventoryError(account_id, "inventory returned no data (private profile?)")
    if not isinstance(payload, dict):
        raise MalformedInventoryError(account_id, f"unexpected payload type {type(payload).__name__}")
    if not payload.get("success"):
        raise MalformedInventoryError(account_id, f"API reported failure: {payload.get('error') or payload.get('Error') or 'unknown'}")

    assets = payload.get("assets")
    descriptions = payload.get("descriptions")
    if assets is None and descriptions is None and payload.get("total_inventory_count", 0) == 0:
        return []
    if not isinstance(assets, list) or not isinstance(descriptions, list):
        raise MalformedInventoryError(account_id, "missing assets or descriptions")

    by_class: Dict[Tuple[str, str], dict] = {}
    for d in descriptions:
        if not isinstance(d, dict):
            continue
        by_class[(str(d.get("classid")), str(d.get("instanceid", "0")))] = d

    items: List[ObservedItem] = []
    for a in assets:
        if not isinstance(a, dict) or a.get("assetid") is None:
            continue
        key = (str(a.get("classid")), str(a.get("instanceid", "0")))
        d = by_class.get(key)
        if d is None:
            logger.debug("No description for asset %s (classid=%s instanceid=%s)", a.get("assetid"), *key)
            continue
        items.append(
            ObservedItem(
                item_id=str(a["assetid"]),
                display_name=str(d.get("name") or ""),
                market_key=str(d.get("market_hash_name") or d.get("name") or ""),
                description_lines=_description_lines(d),
            )
        )
    logger.debug(
        "Total inventory count for %s: %s (%d assets parsed)",
        account_id, payload.get("total_inventory_count"), len(items),
    )
    return items


def fetch_inventory(
    account_id: str,
    count: int = INVENTORY_COUNT,
    *,
    session: Optional[requests.Session] = None,
) -> List[ObservedItem]:
    """Fetch and parse the inventory of ``account_id``.

    Raises a subclass of :class:`InventoryError` on any failure so the
    caller can skip the account for this cycle.
    """
    close_session = False
    if session is None:
        session = get_http_session()
        close_session = True

    try:
        try:
            resp = _get(
                session,
                _build_inventory_endpoint(account_id),
                params={"l": "english", "count": count},
            )
        except HTTPError as e:
            if e.status_code in (401, 403):
                raise PrivateInventoryError(account_id, f"HTTP {e.status_code}") from e
            raise InventoryUnavailableError(account_id, str(e)) from e
        except requests.RequestException as e:
            raise InventoryUnavailableError(account_id, str(e)) from e

        try:
            payload = resp.json()
        except (ValueError, json.JSONDecodeError) as e:
            raise MalformedInventoryError(account_id, f"body is not JSON: {resp.text[:120]!r}") from e
        return parse_inventory(account_id, payload)
    finally:
        if close_session:
            session.close()


__all__ = [
    "ObservedItem",
    "InventoryError",
    "PrivateInventoryError",
    "InventoryUnavailableError",
    "MalformedInventoryError",
    "parse_inventory",
    "fetch_inventory",
]
