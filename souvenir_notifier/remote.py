"""Remote start/stop through the Firebase ``config`` node.

The companion app writes ``config/server_trigger``: ``true`` starts an idle
server, ``false`` puts a running one back to idle.  The server publishes
``server_online``, ``server_running`` and
``server_remote_control_enabled`` so the app can show its state.
"""

from __future__ import annotations

import logging
import threading
from typing import Optional

from . import config
from .directory import DirectoryError, FirebaseDirectory
from .service import PollService

logger = logging.getLogger(__name__)


class RemoteControl:
    def __init__(self, directory: FirebaseDirectory, service: PollService, *, poll_seconds: Optional[float] = None) -> None:
        self.directory = directory
        self.service = service
        self.poll_seconds = poll_seconds if poll_seconds is not None else config.REMOTE_POLL_SECONDS
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def _set(self, key: str, value, **kwargs) -> None:
        try:
            self.directory.write(f"config/{key}", value, **kwargs)
        except DirectoryError as e:
            logger.warning("Could not update config/%s: %s", key, e)

    def publish_state(self) -> None:
        self._set("server_running", self.service.running)
        self._set("server_online", True)

    def handle_trigger(self, value) -> None:
        logger.debug("Config change detected: { server_trigger: %s }", value)
        if value is True and not self.service.running:
            logger.debug("Starting server as requested by remote control")
            self.service.start()
        elif value is False and self.service.running:
            logger.debug("Stopping server as requested by remote control")
            self.service.stop()
            logger.info("Server is now in idle mode, waiting to receive a startup command")
        self._set("server_trigger", None)
        self.publish_state()

    def poll_once(self) -> None:
        try:
            value = self.directory.read("config/server_trigger")
        except DirectoryError as e:
            logger.warning("Remote control poll failed: %s", e)
            return
        if value is not None:
            self.handle_trigger(value)

    def start(self, listen: bool = True) -> None:
        """Publish server state; with ``listen`` also obey ``server_trigger``."""
        self.publish_state()
        if not listen:
            return
        logger.debug("Remote control enabled")
        self._set("server_remote_control_enabled", True)
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="remote-control", daemon=True)
        self._thread.start()

    def _loop(self) -> None:
        while not self._stop.wait(self.poll_seconds):
            self.poll_once()

    def shutdown(self) -> None:
        """Stop listening and mark the server offline with single-attempt writes."""
        timeout = config.SHUTDOWN_WRITE_TIMEOUT_SECONDS
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None
        self._set("server_running", False, attempts=1, timeout=timeout)
        self._set("server_remote_control_enabled", None, attempts=1, timeout=timeout)
        self._set("server_online", False, attempts=1, timeout=timeout)


__all__ = ["RemoteControl"]
