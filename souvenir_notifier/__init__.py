"""
Souvenir Package notifier package.

This package contains modules for polling Steam inventories, recognising
Souvenir Package drops, persisting the packages already seen per account,
looking up market prices, pushing notifications and coordinating the
polling loop.  See README.md for details.
"""

__all__ = [
    "config",
    "classifier",
    "directory",
    "inventory",
    "main",
    "notifier",
    "poller",
    "pricing",
    "remote",
    "service",
    "state",
    "utils",
]
