from __future__ import annotations

import argparse
import logging
import os
import signal
import sys
import threading
import time
from typing import Callable, List, Optional, Sequence

from . import config
from .directory import FirebaseDirectory, build_directory
from .notifier import Dispatcher
from .poller import Poller
from .remote import RemoteControl
from .service import PollService
from .state import StateStore
from .utils import check_connectivity


def setup_logging(verbose: bool = False) -> None:
    level = logging.DEBUG if verbose else getattr(logging, config.LOG_LEVEL.upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    # urllib3 connection chatter is only useful when debugging
    logging.getLogger("urllib3").setLevel(logging.WARNING)


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="souvenir-notifier",
        description="Notify followers when tracked Steam accounts receive a Souvenir Package.",
    )
    parser.add_argument("-d", "--delay", type=float, default=None,
                        help="minutes between refreshes (default: POLL_INTERVAL_MINUTES or 5)")
    parser.add_argument("-v", "--verbose", action="store_true", help="debug logging")
    parser.add_argument("--idle", action="store_true", help="start idle, without polling")
    parser.add_argument("-r", "--remote-control", action="store_true",
                        help="accept start/stop commands from the remote directory")
    parser.add_argument("--source", choices=config.ACCOUNT_SOURCES, default=None,
                        help="where to read tracked accounts from")
    parser.add_argument("--accounts-file", default=None, help="accounts file for --source static")
    parser.add_argument("--state-file", default=None, help="JSON file remembering seen packages")
    parser.add_argument("--workers", type=int, default=None, help="accounts polled in parallel")
    return parser.parse_args(argv)


def apply_args(args: argparse.Namespace) -> None:
    """Fold CLI overrides into the config module before validation."""
    if args.delay is not None:
        config.POLL_INTERVAL_MINUTES = args.delay
    if args.source is not None:
        config.ACCOUNT_SOURCE = args.source
    if args.accounts_file is not None:
        config.ACCOUNTS_FILE = args.accounts_file
    if args.state_file is not None:
        config.STATE_FILE = args.state_file
    if args.workers is not None:
        config.MAX_WORKERS = args.workers


def shutdown_within(
    grace: float,
    service: PollService,
    cleanups: Sequence[Callable[[], None]],
    *,
    write_timeout: Optional[float] = None,
) -> bool:
    """Stop ``service`` and run ``cleanups`` under one deadline.

    The cleanups get whatever is left of ``grace``, but at least
    ``write_timeout`` seconds.  Returns True only if the in-flight cycle
    finished and every cleanup returned in time.
    """
    logger = logging.getLogger(__name__)
    write_timeout = config.SHUTDOWN_WRITE_TIMEOUT_SECONDS if write_timeout is None else write_timeout
    deadline = time.monotonic() + grace
    finished = service.stop(grace)

    def _run() -> None:
        for cleanup in cleanups:
            try:
                cleanup()
            except Exception:
                logger.exception("Error during shutdown")

    worker = threading.Thread(target=_run, name="shutdown", daemon=True)
    worker.start()
    worker.join(timeout=max(write_timeout, deadline - time.monotonic()))
    if worker.is_alive():
        logger.warning("Shutdown cleanup still running; giving up on it")
        return False
    return finished


def main(argv: Optional[List[str]] = None) -> int:
    """Initialise and run the poll loop until SIGINT/SIGTERM."""
    args = parse_args(argv)
    apply_args(args)
    setup_logging(args.verbose)
    logger = logging.getLogger(__name__)

    try:
        config.validate()
    except RuntimeError as e:
        logger.error("%s", e)
        return 2
    if args.remote_control and config.ACCOUNT_SOURCE != "remote":
        logger.error("--remote-control requires the remote account source")
        return 2
    if not check_connectivity():
        logger.error("Error: the server requires an active internet connection")
        return 1

    directory = build_directory(config.ACCOUNT_SOURCE, config.ACCOUNTS_FILE)
    dispatcher = Dispatcher(config.notify_backend())
    poller = Poller(StateStore(config.STATE_FILE), dispatcher=dispatcher, max_workers=config.MAX_WORKERS)
    service = PollService(poller, directory, interval_minutes=config.POLL_INTERVAL_MINUTES)

    remote: Optional[RemoteControl] = None
    if isinstance(directory, FirebaseDirectory):
        remote = RemoteControl(directory, service)

    shutdown = threading.Event()

    def _on_signal(signum, _frame) -> None:
        logger.info("Shutting down server")
        shutdown.set()

    signal.signal(signal.SIGINT, _on_signal)
    signal.signal(signal.SIGTERM, _on_signal)

    if args.idle or args.remote_control:
        logger.info("Server is now in idle mode, waiting to receive a startup command")
    else:
        service.start()
    if remote is not None:
        remote.start(listen=args.remote_control)

    while not shutdown.wait(1.0):
        pass

    cleanups: List[Callable[[], None]] = []
    if remote is not None:
        cleanups.append(remote.shutdown)
    cleanups.append(lambda: directory.close(config.SHUTDOWN_WRITE_TIMEOUT_SECONDS))
    cleanups.append(dispatcher.close)
    if not shutdown_within(config.SHUTDOWN_GRACE_SECONDS, service, cleanups):
        # leftover poll workers are not daemon threads and would block a normal exit
        logging.shutdown()
        os._exit(1)
    return 0


if __name__ == "__main__":
    sys.exit(main())
