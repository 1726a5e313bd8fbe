"""Push notification dispatcher.

Delivers drop notifications to the recipient tokens of an account.  Three
backends are supported:

* ``simplepush``: the token is a Simplepush key.
* ``discord``: the token is a Discord webhook URL; the drop is sent as a
  single embed.
* ``fcm``: the token is a Firebase Cloud Messaging registration token of
  the companion app; the payload is sent as the message's ``data``.

Delivery failures are logged here and never raised to the caller.
"""
from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from typing import Iterator, List, Mapping, Optional

import firebase_admin
import requests
from firebase_admin import credentials, exceptions, messaging

from . import config
from .utils import HTTPError, get_http_session, retryable_request

logger = logging.getLogger(__name__)

FCM_APP_NAME = "souvenir-notifier"


@retryable_request
def _post(session: requests.Session, url: str, **kwargs) -> requests.Response:
    return session.post(url, **kwargs)


def build_title(payload: Mapping[str, str]) -> str:
    return f"New item drop for {payload.get('username', 'unknown')}"


def build_message(payload: Mapping[str, str]) -> str:
    msg = f"You got a Souvenir Package from {payload.get('map', '?')} worth {payload.get('price', '0')}"
    if payload.get("team1") and payload.get("team2"):
        msg += f" ({payload['team1']} vs {payload['team2']}"
        if payload.get("tier"):
            msg += f", {payload['tier']}"
        msg += ")"
    return msg


def _build_embed(payload: Mapping[str, str]) -> dict:
    desc_lines = [
        f"Event: {payload.get('event', '?')} {payload.get('year', '')}".rstrip(),
        f"Map: {payload.get('map', '?')}",
        f"Price: {payload.get('price', '0')}",
    ]
    if payload.get("team1") and payload.get("team2"):
        desc_lines.append(f"Match: {payload['team1']} vs {payload['team2']}")
    if payload.get("tier"):
        desc_lines.append(f"Stage: {payload['tier']}")

    embed = {
        "title": build_title(payload),
        "description": "\n".join(desc_lines),
    }
    if payload.get("url"):
        embed["url"] = payload["url"]
    return embed


def init_fcm_app(credentials_file: Optional[str] = None) -> firebase_admin.App:
    """Initialise (once) the firebase-admin app used for FCM delivery."""
    try:
        return firebase_admin.get_app(FCM_APP_NAME)
    except ValueError:
        pass
    path = config.FIREBASE_CREDENTIALS if credentials_file is None else credentials_file
    cred = credentials.Certificate(path) if path else None
    logger.debug("Initialising firebase-admin for FCM (credentials: %s)", path or "application default")
    return firebase_admin.initialize_app(cred, name=FCM_APP_NAME)


class Dispatcher:
    """Sends payloads to tokens; safe to call from several poll workers.

    HTTP backends check a session out of a small pool for each send, so
    concurrent workers never share a ``requests.Session``.
    """

    def __init__(
        self,
        backend: Optional[str] = None,
        session: Optional[requests.Session] = None,
        *,
        fcm_app: Optional[firebase_admin.App] = None,
    ) -> None:
        self.backend = (backend or config.notify_backend()).lower()
        if self.backend not in config.NOTIFY_BACKENDS:
            raise ValueError(f"Unknown notification backend: {self.backend}")
        self._lock = threading.Lock()
        self._idle: List[requests.Session] = [session] if session is not None else []
        self._sessions: List[requests.Session] = list(self._idle)
        self._fcm_app: Optional[firebase_admin.App] = None
        if self.backend == "fcm":
            self._fcm_app = fcm_app if fcm_app is not None else init_fcm_app()

    @contextmanager
    def _session(self) -> Iterator[requests.Session]:
        with self._lock:
            if self._idle:
                session = self._idle.pop()
            else:
                session = get_http_session()
                self._sessions.append(session)
        try:
            yield session
        finally:
            with self._lock:
                self._idle.append(session)

    def _send_simplepush(self, token: str, payload: Mapping[str, str]) -> None:
        data = {"key": token, "title": build_title(payload), "msg": build_message(payload)}
        if config.SIMPLEPUSH_EVENT:
            data["event"] = config.SIMPLEPUSH_EVENT
        with self._session() as session:
            resp = _post(session, config.SIMPLEPUSH_URL, data=data)
        try:
            body = resp.json()
        except ValueError:
            body = None
        if not isinstance(body, dict) or body.get("status") != "OK":
            raise HTTPError(f"Simplepush rejected message: {resp.text[:200]}", status_code=resp.status_code)

    def _send_discord(self, token: str, payload: Mapping[str, str]) -> None:
        with self._session() as session:
            _post(session, token, json={"embeds": [_build_embed(payload)]})

    def _send_fcm(self, token: str, payload: Mapping[str, str]) -> None:
        message = messaging.Message(data={k: str(v) for k, v in payload.items()}, token=token)
        message_id = messaging.send(message, app=self._fcm_app)
        logger.debug("FCM accepted message %s", message_id)

    def send(self, token: str, payload: Mapping[str, str]) -> bool:
        """Deliver ``payload`` to ``token``. Returns False on failure."""
        try:
            if self.backend == "fcm":
                self._send_fcm(token, payload)
            elif self.backend == "discord":
                self._send_discord(token, payload)
            else:
                self._send_simplepush(token, payload)
        except (HTTPError, requests.RequestException, exceptions.FirebaseError, ValueError) as e:
            logger.error("Error sending message to %s…: %s", token[:8], e)
            return False
        logger.debug("Successfully sent message for %s to %s…", payload.get("username"), token[:8])
        return True

    def close(self) -> None:
        with self._lock:
            sessions, self._sessions, self._idle = self._sessions, [], []
        for session in sessions:
            session.close()


__all__ = ["Dispatcher", "init_fcm_app", "build_title", "build_message"]
