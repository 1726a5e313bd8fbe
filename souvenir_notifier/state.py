"""Seen-item state, persisted as a single JSON document.

Format::

    {"76561198000000000": ["15762831005", "15762831006"], ...}

One key per account ever polled successfully; the value is the list of
Souvenir Package asset ids observed in that account's latest poll.  The
file is always replaced atomically (temp file + ``os.replace``).
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from pathlib import Path
from typing import Dict, Iterable, Mapping, Optional, Set

from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_fixed

from .config import STATE_FILE

logger = logging.getLogger(__name__)


class StateStore:
    """Account id -> seen item ids, owned by the poller.

    Every mutation goes through one lock and rewrites the whole file, so
    concurrent account workers never interleave writes.
    """

    def __init__(self, path: Optional[str] = None) -> None:
        self.path = Path(path or STATE_FILE)
        self._lock = threading.Lock()
        self._data: Dict[str, Set[str]] = {}

    # ---- reading -------------------------------------------------------------

    def _read(self) -> Dict[str, Set[str]]:
        with open(self.path, "r", encoding="utf-8") as f:
            raw = json.load(f)
        if not isinstance(raw, dict):
            raise ValueError(f"state document is a {type(raw).__name__}, expected an object")
        data: Dict[str, Set[str]] = {}
        for account_id, ids in raw.items():
            if not isinstance(ids, list):
                raise ValueError(f"entry for {account_id} is not a list")
            data[str(account_id)] = {str(i) for i in ids}
        return data

    def load(self) -> Dict[str, Set[str]]:
        """Reload from disk. A missing or broken file becomes an empty store."""
        with self._lock:
            try:
                self._data = self._read()
            except FileNotFoundError:
                logger.debug("File %s doesn't exist, creating it", self.path)
                self._data = {}
                self._persist()
            except (OSError, ValueError) as e:
                logger.warning("State file %s is unreadable (%s); starting from an empty store", self.path, e)
                self._data = {}
                self._persist()
            return self._snapshot()

    def _snapshot(self) -> Dict[str, Set[str]]:
        return {k: set(v) for k, v in self._data.items()}

    def snapshot(self) -> Dict[str, Set[str]]:
        with self._lock:
            return self._snapshot()

    def get(self, account_id: str) -> Optional[Set[str]]:
        with self._lock:
            ids = self._data.get(account_id)
            return set(ids) if ids is not None else None

    def __contains__(self, account_id: object) -> bool:
        with self._lock:
            return account_id in self._data

    def __len__(self) -> int:
        with self._lock:
            return len(self._data)

    # ---- writing -------------------------------------------------------------

    @retry(
        reraise=True,
        stop=stop_after_attempt(3),
        wait=wait_fixed(0.5),
        retry=retry_if_exception_type(OSError),
    )
    def _write(self, document: Mapping[str, list]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(prefix=f".{self.path.name}.", suffix=".tmp", dir=str(self.path.parent))
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(document, f, separators=(",", ":"))
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp, self.path)
        except BaseException:
            try:
                os.unlink(tmp)
            except OSError:
                pass
            raise

    def _persist(self) -> bool:
        document = {k: sorted(v) for k, v in self._data.items()}
        logger.debug("Saving data for %d steam account(s)", len(document))
        try:
            self._write(document)
        except OSError:
            logger.exception(
                "Failed to write state file %s; already-seen items may be notified again", self.path
            )
            return False
        return True

    def save(self, mapping: Mapping[str, Iterable[str]]) -> bool:
        """Replace the whole store with ``mapping`` and persist it."""
        with self._lock:
            self._data = {str(k): {str(i) for i in v} for k, v in mapping.items()}
            return self._persist()

    def replace(self, account_id: str, item_ids: Iterable[str]) -> bool:
        """Set one account's snapshot and persist the full document."""
        with self._lock:
            self._data[account_id] = {str(i) for i in item_ids}
            return self._persist()


__all__ = ["StateStore"]
