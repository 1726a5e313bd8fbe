"""Scheduling loop around :class:`~souvenir_notifier.poller.Poller`.

One background thread resolves the account list, runs a cycle and sleeps
for the poll interval.  A directory change only raises a flag; the flag is
consumed once the in-flight cycle is over, so a cycle never mixes two
versions of the account list.
"""

from __future__ import annotations

import logging
import threading
from typing import Callable, List, Optional

from . import config
from .directory import Account, DirectoryError
from .poller import Poller
from .utils import check_connectivity

logger = logging.getLogger(__name__)


class PollService:
    def __init__(
        self,
        poller: Poller,
        directory,
        *,
        interval_minutes: Optional[float] = None,
        connectivity_check: Optional[Callable[[], bool]] = None,
    ) -> None:
        self.poller = poller
        self.directory = directory
        self.interval_seconds = float(interval_minutes or config.POLL_INTERVAL_MINUTES) * 60
        self._connectivity_check = connectivity_check if connectivity_check is not None else check_connectivity
        self._stop = threading.Event()
        self._restart = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._watching = False
        self.accounts: Optional[List[Account]] = None
        self._retry_resolve = False
        self.cycles = 0

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    @property
    def restart_requested(self) -> bool:
        return self._restart.is_set()

    def request_restart(self) -> None:
        """Re-resolve the account list once the current cycle is done."""
        self._restart.set()

    def start(self) -> bool:
        if self.running:
            logger.debug("Poll loop already running")
            return False
        logger.info(
            "Starting souvenir-notifier, refresh time is set to %g minutes", self.interval_seconds / 60
        )
        if not self._watching:
            self.directory.watch_for_changes(self.request_restart)
            self._watching = True
        self._stop.clear()
        self.accounts = None
        self._thread = threading.Thread(target=self._loop, name="poll-loop", daemon=True)
        self._thread.start()
        return True

    def stop(self, grace: Optional[float] = None) -> bool:
        """Stop scheduling cycles; wait up to ``grace`` seconds for the loop.

        Returns False if a cycle was still running when the grace ran out.
        """
        grace = config.SHUTDOWN_GRACE_SECONDS if grace is None else grace
        self._stop.set()
        thread = self._thread
        if thread is None:
            return True
        thread.join(timeout=grace)
        if thread.is_alive():
            logger.warning("Cycle still in flight after %.0fs; giving up on it", grace)
            return False
        self._thread = None
        return True

    def _resolve_accounts(self) -> bool:
        # cleared first so a change signalled during resolve() is not lost
        self._restart.clear()
        try:
            accounts = self.directory.resolve()
        except DirectoryError as e:
            logger.error("Could not resolve accounts, retrying next tick: %s", e)
            self._retry_resolve = True
            return False
        self._retry_resolve = False
        self.accounts = accounts
        self._startup_text(accounts)
        return True

    def _startup_text(self, accounts: List[Account]) -> None:
        names = ", ".join(a.display_name for a in accounts)
        logger.info("Fetched users from directory [ %s ]", names)
        snapshot = self.poller.store.load()
        for a in accounts:
            count = len(snapshot.get(a.account_id) or ())
            if count > 0:
                logger.info(
                    "%s already has %d Souvenir Package%s", a.display_name, count, "" if count == 1 else "s"
                )

    def tick(self) -> bool:
        """One scheduling decision: maybe re-resolve, then maybe run a cycle.

        Returns True if a cycle ran.
        """
        if self.accounts is None or self._retry_resolve or self._restart.is_set():
            if not self._resolve_accounts():
                return False
        if not self._connectivity_check():
            logger.error("No internet connection; skipping this refresh")
            return False
        report = self.poller.run_cycle(self.accounts)
        if report is None:
            return False
        self.cycles += 1
        return True

    def _loop(self) -> None:
        while not self._stop.is_set():
            try:
                self.tick()
            except Exception:
                logger.exception("Unexpected error in poll loop")
            if self._restart.is_set() and not self._stop.is_set():
                logger.info("Account list changed; restarting with a fresh cycle")
                continue
            self._stop.wait(self.interval_seconds)


__all__ = ["PollService"]
