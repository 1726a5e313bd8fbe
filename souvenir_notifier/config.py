"""Configuration loader.

Reads environment variables and `.env` to configure the service.  The CLI
in :mod:`souvenir_notifier.main` may override a few of these at startup.
"""

from __future__ import annotations

import os
from typing import Optional
from pathlib import Path

from dotenv import load_dotenv

# Load variables from a .env file if present (project root).
load_dotenv(dotenv_path=Path(__file__).resolve().parents[1] / ".env")


def _get_env(name: str, default: Optional[str] = None) -> Optional[str]:
    return os.environ.get(name, default)


def _parse_int(value: Optional[str], default: int) -> int:
    try:
        return int(value) if value is not None else default
    except ValueError:
        return default


def _parse_float(value: Optional[str], default: float) -> float:
    try:
        return float(value) if value is not None else default
    except ValueError:
        return default


# ---- Polling -----------------------------------------------------------------

# Minutes between two poll cycles.
POLL_INTERVAL_MINUTES: float = _parse_float(_get_env("POLL_INTERVAL_MINUTES", "5"), 5.0)

# Maximum number of inventory entries requested per account.
INVENTORY_COUNT: int = _parse_int(_get_env("INVENTORY_COUNT", "1000"), 1000)

# Accounts polled in parallel within one cycle (1 = sequential).
MAX_WORKERS: int = _parse_int(_get_env("MAX_WORKERS", "4"), 4)

# ---- Steam endpoints ---------------------------------------------------------

STEAM_INVENTORY_URL: str = _get_env(
    "STEAM_INVENTORY_URL", "https://steamcommunity.com/inventory/{account_id}/730/2"
)
STEAM_PRICE_URL: str = _get_env(
    "STEAM_PRICE_URL", "https://steamcommunity.com/market/priceoverview"
)
STEAM_PROFILE_URL: str = _get_env(
    "STEAM_PROFILE_URL", "https://steamcommunity.com/profiles/{account_id}/inventory#730_2_{item_id}"
)

# Steam market currency code (3 = EUR).
PRICE_CURRENCY: int = _parse_int(_get_env("PRICE_CURRENCY", "3"), 3)

# ---- HTTP --------------------------------------------------------------------

REQUEST_TIMEOUT_SECONDS: float = _parse_float(_get_env("REQUEST_TIMEOUT_SECONDS", "20"), 20.0)
HTTP_RETRY_ATTEMPTS: int = _parse_int(_get_env("HTTP_RETRY_ATTEMPTS", "3"), 3)

# Probed before each cycle and at startup. Empty disables the check.
CONNECTIVITY_CHECK_URL: str = _get_env("CONNECTIVITY_CHECK_URL", "https://gstatic.com/generate_204") or ""

# ---- Accounts ----------------------------------------------------------------

# "static" reads ACCOUNTS_FILE, "remote" reads the Firebase Realtime Database.
ACCOUNT_SOURCE: str = (_get_env("ACCOUNT_SOURCE", "static") or "static").strip().lower()
ACCOUNTS_FILE: str = _get_env("ACCOUNTS_FILE", "config.cfg")

FIREBASE_DATABASE_URL: Optional[str] = _get_env("FIREBASE_DATABASE_URL")
# Database secret or ID token passed as the `auth` query parameter.
FIREBASE_AUTH: Optional[str] = _get_env("FIREBASE_AUTH")

DIRECTORY_WATCH_SECONDS: float = _parse_float(_get_env("DIRECTORY_WATCH_SECONDS", "30"), 30.0)
REMOTE_POLL_SECONDS: float = _parse_float(_get_env("REMOTE_POLL_SECONDS", "5"), 5.0)

# ---- State -------------------------------------------------------------------

STATE_FILE: str = _get_env("STATE_FILE", "files/data.json")

# ---- Notifications -----------------------------------------------------------

# "simplepush" (tokens are Simplepush keys), "discord" (tokens are webhook URLs)
# or "fcm" (tokens are Firebase Cloud Messaging registration tokens).  Empty
# picks "fcm" for the remote account source and "simplepush" otherwise.
NOTIFY_BACKEND: str = (_get_env("NOTIFY_BACKEND", "") or "").strip().lower()
SIMPLEPUSH_URL: str = _get_env("SIMPLEPUSH_URL", "https://api.simplepush.io/send")
SIMPLEPUSH_EVENT: Optional[str] = _get_env("SIMPLEPUSH_EVENT")

# Service account key used by the fcm backend. Empty uses Application
# Default Credentials.
FIREBASE_CREDENTIALS: Optional[str] = _get_env("FIREBASE_CREDENTIALS", "serviceAccountKey.json")

# ---- Process -----------------------------------------------------------------

SHUTDOWN_GRACE_SECONDS: float = _parse_float(_get_env("SHUTDOWN_GRACE_SECONDS", "10"), 10.0)

# Timeout for the best-effort status writes made while shutting down.
SHUTDOWN_WRITE_TIMEOUT_SECONDS: float = _parse_float(_get_env("SHUTDOWN_WRITE_TIMEOUT_SECONDS", "3"), 3.0)

# Logging level: DEBUG, INFO, WARNING, ERROR.
LOG_LEVEL: str = _get_env("LOG_LEVEL", "INFO")

# ---- Validation --------------------------------------------------------------

ACCOUNT_SOURCES = ("static", "remote")
NOTIFY_BACKENDS = ("simplepush", "discord", "fcm")


def notify_backend() -> str:
    """The configured notification backend, defaulted from the account source."""
    if NOTIFY_BACKEND:
        return NOTIFY_BACKEND
    return "fcm" if ACCOUNT_SOURCE == "remote" else "simplepush"


def validate() -> None:
    """Validate required configuration parameters."""
    if POLL_INTERVAL_MINUTES <= 0:
        raise RuntimeError("POLL_INTERVAL_MINUTES must be a positive number of minutes.")
    if ACCOUNT_SOURCE not in ACCOUNT_SOURCES:
        raise RuntimeError(
            f"ACCOUNT_SOURCE must be one of {', '.join(ACCOUNT_SOURCES)} (got {ACCOUNT_SOURCE!r})."
        )
    if ACCOUNT_SOURCE == "remote" and not FIREBASE_DATABASE_URL:
        raise RuntimeError(
            "FIREBASE_DATABASE_URL must be set when ACCOUNT_SOURCE=remote. See .env.example for details."
        )
    backend = notify_backend()
    if backend not in NOTIFY_BACKENDS:
        raise RuntimeError(
            f"NOTIFY_BACKEND must be one of {', '.join(NOTIFY_BACKENDS)} (got {backend!r})."
        )
    # app users register FCM device tokens, nothing else can deliver to them
    if ACCOUNT_SOURCE == "remote" and backend != "fcm":
        raise RuntimeError("NOTIFY_BACKEND must be fcm when ACCOUNT_SOURCE=remote.")
    if backend == "fcm" and FIREBASE_CREDENTIALS and not Path(FIREBASE_CREDENTIALS).is_file():
        raise RuntimeError(
            f"FIREBASE_CREDENTIALS points to {FIREBASE_CREDENTIALS}, which does not exist."
        )
    if MAX_WORKERS < 1:
        raise RuntimeError("MAX_WORKERS must be at least 1.")


__all__ = [
    # Polling
    "POLL_INTERVAL_MINUTES",
    "INVENTORY_COUNT",
    "MAX_WORKERS",
    # Steam
    "STEAM_INVENTORY_URL",
    "STEAM_PRICE_URL",
    "STEAM_PROFILE_URL",
    "PRICE_CURRENCY",
    # HTTP
    "REQUEST_TIMEOUT_SECONDS",
    "HTTP_RETRY_ATTEMPTS",
    "CONNECTIVITY_CHECK_URL",
    # Accounts
    "ACCOUNT_SOURCE",
    "ACCOUNTS_FILE",
    "FIREBASE_DATABASE_URL",
    "FIREBASE_AUTH",
    "DIRECTORY_WATCH_SECONDS",
    "REMOTE_POLL_SECONDS",
    # State
    "STATE_FILE",
    # Notifications
    "NOTIFY_BACKEND",
    "SIMPLEPUSH_URL",
    "SIMPLEPUSH_EVENT",
    "FIREBASE_CREDENTIALS",
    # Process
    "SHUTDOWN_GRACE_SECONDS",
    "SHUTDOWN_WRITE_TIMEOUT_SECONDS",
    "LOG_LEVEL",
    # Helpers
    "notify_backend",
    "validate",
]
