"""Account directories.

A directory resolves the Steam accounts to poll, together with the push
tokens of everyone who follows them.  Two sources exist:

* :class:`StaticDirectory` reads a plain text file, one account per line::

      # display_name steam_id [token ...]
      alice 76561198000000001 key-a key-b

* :class:`FirebaseDirectory` reads the ``data/users`` node of a Firebase
  Realtime Database over its REST API and can watch it for edits.
"""

from __future__ import annotations

import hashlib
import json
import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

import requests
from tenacity import stop_after_attempt

from . import config
from .utils import HTTPError, get_http_session, retryable_request

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Account:
    account_id: str
    display_name: str
    notify_targets: List[str] = field(default_factory=list)


class DirectoryError(Exception):
    """The account list could not be resolved."""


class StaticDirectory:
    """Accounts listed in a local file. Has no change notification."""

    def __init__(self, path: Optional[str] = None) -> None:
        self.path = path or config.ACCOUNTS_FILE

    def resolve(self) -> List[Account]:
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                lines = f.read().splitlines()
        except OSError as e:
            raise DirectoryError(f"Cannot read accounts file {self.path}: {e}") from e
        return parse_accounts_file(lines)

    def watch_for_changes(self, on_change: Callable[[], None]) -> None:
        return None

    def close(self, timeout: Optional[float] = None) -> None:
        return None


def parse_accounts_file(lines: List[str]) -> List[Account]:
    accounts: Dict[str, Account] = {}
    for lineno, line in enumerate(lines, start=1):
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        parts = line.split()
        if len(parts) < 2:
            logger.warning("Ignoring malformed accounts line %d: %r", lineno, line)
            continue
        name, account_id, *tokens = parts
        if account_id in accounts:
            logger.warning("Account %s listed twice; line %d wins", account_id, lineno)
            # re-insert so the surviving entry takes the later position
            del accounts[account_id]
        accounts[account_id] = Account(account_id=account_id, display_name=name, notify_targets=tokens)
    return list(accounts.values())


def parse_firebase_users(users: Any) -> List[Account]:
    """Flatten ``{uid: {token, steamAccounts: {steam_id: name}}}``.

    Each app user's token is added to every Steam account they follow; the
    first display name seen for an account is kept.
    """
    if users is None:
        return []
    if not isinstance(users, dict):
        raise DirectoryError(f"users node is a {type(users).__name__}, expected an object")

    names: Dict[str, str] = {}
    tokens: Dict[str, List[str]] = {}
    for uid, user in users.items():
        if not isinstance(user, dict):
            logger.warning("Skipping app user %s: unexpected entry %r", uid, user)
            continue
        token = user.get("token")
        steam_accounts = user.get("steamAccounts") or {}
        if not isinstance(steam_accounts, dict):
            logger.warning("Skipping app user %s: steamAccounts is not an object", uid)
            continue
        for steam_id, name in steam_accounts.items():
            steam_id = str(steam_id)
            names.setdefault(steam_id, str(name))
            targets = tokens.setdefault(steam_id, [])
            if token and token not in targets:
                targets.append(str(token))

    logger.debug("Loaded %d app user(s)", len(users))
    logger.debug("Loaded %d Steam account(s)", len(names))
    return [Account(account_id=sid, display_name=names[sid], notify_targets=tokens[sid]) for sid in names]


@retryable_request
def _get(session: requests.Session, url: str, **kwargs: Any) -> requests.Response:
    return session.get(url, **kwargs)


@retryable_request
def _put(session: requests.Session, url: str, **kwargs: Any) -> requests.Response:
    return session.put(url, **kwargs)


@retryable_request
def _delete(session: requests.Session, url: str, **kwargs: Any) -> requests.Response:
    return session.delete(url, **kwargs)


class FirebaseDirectory:
    """Accounts stored in a Firebase Realtime Database, read over REST."""

    def __init__(
        self,
        database_url: Optional[str] = None,
        auth: Optional[str] = None,
        *,
        session: Optional[requests.Session] = None,
        watch_interval: Optional[float] = None,
    ) -> None:
        url = database_url or config.FIREBASE_DATABASE_URL
        if not url:
            raise DirectoryError("FIREBASE_DATABASE_URL is not configured")
        self.database_url = url.rstrip("/")
        self.auth = auth if auth is not None else config.FIREBASE_AUTH
        self.watch_interval = watch_interval if watch_interval is not None else config.DIRECTORY_WATCH_SECONDS
        self._session = session or get_http_session()
        self._stop = threading.Event()
        self._watcher: Optional[threading.Thread] = None

    def _node_url(self, path: str) -> str:
        return f"{self.database_url}/{path.strip('/')}.json"

    def _params(self) -> Dict[str, str]:
        return {"auth": self.auth} if self.auth else {}

    def read(self, path: str) -> Any:
        try:
            resp = _get(self._session, self._node_url(path), params=self._params())
            return resp.json()
        except (HTTPError, requests.RequestException, ValueError) as e:
            raise DirectoryError(f"Failed to read {path} from {self.database_url}: {e}") from e

    def write(
        self, path: str, value: Any, *, attempts: Optional[int] = None, timeout: Optional[float] = None
    ) -> None:
        """Set ``path`` to ``value``; ``None`` deletes the node.

        ``attempts`` and ``timeout`` override the HTTP retry policy for
        best-effort writes such as the ones made while shutting down.
        """
        request = _delete if value is None else _put
        if attempts is not None:
            request = request.retry_with(stop=stop_after_attempt(max(1, attempts)))
        kwargs: Dict[str, Any] = {"params": self._params()}
        if value is not None:
            kwargs["data"] = json.dumps(value)
        if timeout is not None:
            kwargs["timeout"] = timeout
        try:
            request(self._session, self._node_url(path), **kwargs)
        except (HTTPError, requests.RequestException) as e:
            raise DirectoryError(f"Failed to write {path} to {self.database_url}: {e}") from e

    def resolve(self) -> List[Account]:
        return parse_firebase_users(self.read("data/users"))

    @staticmethod
    def _fingerprint(value: Any) -> str:
        return hashlib.sha1(json.dumps(value, sort_keys=True).encode("utf-8")).hexdigest()

    def watch_for_changes(self, on_change: Callable[[], None]) -> None:
        """Poll the ``data`` node and call ``on_change`` whenever it differs."""
        if self._watcher is not None:
            return
        self._stop.clear()
        self._watcher = threading.Thread(
            target=self._watch_loop, args=(on_change,), name="directory-watch", daemon=True
        )
        self._watcher.start()

    def _watch_loop(self, on_change: Callable[[], None]) -> None:
        last: Optional[str] = None
        last_ids: set[str] = set()
        while not self._stop.is_set():
            try:
                data = self.read("data")
                users = (data or {}).get("users") if isinstance(data, dict) else None
                fp = self._fingerprint(data)
                if last is not None and fp != last:
                    ids = {a.account_id for a in parse_firebase_users(users)}
                    logger.info("Database updated, restarting on next refresh...")
                    logger.debug(
                        "Difference in Database: added=%s removed=%s",
                        sorted(ids - last_ids), sorted(last_ids - ids),
                    )
                    on_change()
                    last_ids = ids
                elif last is None:
                    last_ids = {a.account_id for a in parse_firebase_users(users)}
                last = fp
            except DirectoryError as e:
                logger.warning("Directory watch failed: %s", e)
            self._stop.wait(self.watch_interval)

    def close(self, timeout: Optional[float] = None) -> None:
        """Stop the watcher, waiting at most ``timeout`` seconds for it."""
        self._stop.set()
        if self._watcher is not None:
            self._watcher.join(timeout=self.watch_interval + 1 if timeout is None else timeout)
            self._watcher = None
        self._session.close()


def build_directory(source: Optional[str] = None, accounts_file: Optional[str] = None):
    source = (source or config.ACCOUNT_SOURCE).lower()
    if source == "remote":
        return FirebaseDirectory()
    return StaticDirectory(accounts_file)


__all__ = [
    "Account",
    "DirectoryError",
    "StaticDirectory",
    "FirebaseDirectory",
    "parse_accounts_file",
    "parse_firebase_users",
    "build_directory",
]
