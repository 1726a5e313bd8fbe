"""Poll cycle: fetch, classify, reconcile against stored state, notify.

The stored value for an account is the snapshot of Souvenir Package ids
seen in its latest successful poll, not a history.  Packages that leave the
inventory are forgotten and reported again if they come back.  The first
successful poll of an account only records the baseline.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence

from . import config
from .classifier import Drop, classify
from .directory import Account
from .inventory import InventoryError, ObservedItem, PrivateInventoryError, fetch_inventory
from .notifier import Dispatcher
from .pricing import PRICE_UNAVAILABLE, humanize_price, lookup_price
from .state import StateStore

logger = logging.getLogger(__name__)


@dataclass
class AccountResult:
    account_id: str
    fetched: bool = False
    baseline: bool = False
    matched: int = 0
    new_ids: List[str] = field(default_factory=list)
    notifications: int = 0


@dataclass
class CycleReport:
    results: List[AccountResult] = field(default_factory=list)

    @property
    def skipped(self) -> List[str]:
        return [r.account_id for r in self.results if not r.fetched]

    @property
    def notifications(self) -> int:
        return sum(r.notifications for r in self.results)


def build_payload(account: Account, drop: Drop, price: str) -> Dict[str, str]:
    """Push data payload for one drop. Match fields only when known."""
    payload = {
        "username": account.display_name,
        "price": price,
        "event": drop.event,
        "year": str(drop.year),
        "map": drop.location,
        "url": config.STEAM_PROFILE_URL.format(account_id=account.account_id, item_id=drop.item_id),
    }
    if drop.match_context is not None:
        payload["tier"] = drop.match_context.tier
        payload["team1"] = drop.match_context.team1
        payload["team2"] = drop.match_context.team2
    return payload


class Poller:
    """Runs poll cycles over a list of accounts.

    Collaborators are injected so cycles can run against fakes; the
    defaults talk to Steam and the configured push backend.
    """

    def __init__(
        self,
        store: StateStore,
        *,
        fetch_inventory: Callable[[str], Sequence[ObservedItem]] = fetch_inventory,
        lookup_price: Callable[[str], str] = lookup_price,
        dispatcher: Optional[Dispatcher] = None,
        max_workers: Optional[int] = None,
    ) -> None:
        self.store = store
        self._fetch_inventory = fetch_inventory
        self._lookup_price = lookup_price
        self.dispatcher = dispatcher if dispatcher is not None else Dispatcher()
        self.max_workers = max(1, max_workers or config.MAX_WORKERS)
        self._cycle_lock = threading.Lock()

    @property
    def in_flight(self) -> bool:
        return self._cycle_lock.locked()

    def run_cycle(self, accounts: Sequence[Account]) -> Optional[CycleReport]:
        """Poll every account once. Returns None if a cycle is already running."""
        if not self._cycle_lock.acquire(blocking=False):
            logger.warning("Previous cycle still running; skipping this one")
            return None
        try:
            logger.info("Refreshing...")
            self.store.load()
            report = CycleReport()
            if self.max_workers == 1 or len(accounts) <= 1:
                report.results = [self._poll_account(a) for a in accounts]
            else:
                with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="poll") as pool:
                    report.results = list(pool.map(self._poll_account, accounts))
            logger.debug(
                "Cycle finished: %d account(s), %d skipped, %d notification(s)",
                len(report.results), len(report.skipped), report.notifications,
            )
            return report
        finally:
            self._cycle_lock.release()

    def _poll_account(self, account: Account) -> AccountResult:
        result = AccountResult(account_id=account.account_id)
        try:
            items = self._fetch_inventory(account.account_id)
        except PrivateInventoryError:
            logger.warning("Failed to fetch inventory for %s, it might be set to private", account.display_name)
            return result
        except InventoryError as e:
            logger.warning("Failed to fetch inventory for %s: %s", account.display_name, e)
            return result
        except Exception:
            logger.exception("Unexpected error fetching inventory for %s", account.display_name)
            return result
        result.fetched = True

        try:
            self._reconcile(account, items, result)
        except Exception:
            logger.exception("Unexpected error processing inventory for %s", account.display_name)
        return result

    def _reconcile(self, account: Account, items: Sequence[ObservedItem], result: AccountResult) -> None:
        drops: Dict[str, Drop] = {}
        for item in items:
            drop = classify(item)
            if drop is not None:
                # dict keeps first-seen order; a duplicate id keeps the later classification
                drops[drop.item_id] = drop

        prior = self.store.get(account.account_id)
        is_new = prior is None
        new_ids = [] if is_new else [i for i in drops if i not in prior]

        result.baseline = is_new
        result.matched = len(drops)
        result.new_ids = new_ids

        self.store.replace(account.account_id, drops.keys())
        logger.debug("Souvenir Package count for %s: %d", account.display_name, len(drops))

        if is_new:
            for drop in drops.values():
                logger.info("%s already had a %s, not notifying", account.display_name, drop.label)
            logger.info(
                "Baseline captured for %s: %d Souvenir Package(s), not notifying",
                account.display_name, len(drops),
            )
            return

        for item_id in new_ids:
            result.notifications += self._notify(account, drops[item_id])

    def _notify(self, account: Account, drop: Drop) -> int:
        try:
            price = self._lookup_price(drop.market_key) or PRICE_UNAVAILABLE
        except Exception:
            logger.exception("Price lookup failed for %s", drop.market_key)
            price = PRICE_UNAVAILABLE

        payload = build_payload(account, drop, price)
        if not account.notify_targets:
            logger.warning("%s has no notification targets", account.display_name)
        sent = 0
        for token in account.notify_targets:
            if self.dispatcher.send(token, payload):
                sent += 1
        logger.info(
            "%s just got a package from %s worth %s", account.display_name, drop.location, humanize_price(price)
        )
        return sent


__all__ = ["Poller", "CycleReport", "AccountResult", "build_payload"]
