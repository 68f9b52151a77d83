"""
In-flight dedup: at most one reconciliation pass per descriptor.

Uses a module-level set (safe since asyncio is single-threaded).
Shared between the scheduler workers and the manual sync endpoint so both
respect the same flag.
"""

from __future__ import annotations

import logging

logger = logging.getLogger(__name__)

_in_flight: set[str] = set()


def try_acquire(identity: str) -> bool:
    """Mark a descriptor in flight. Returns False if it already was."""
    if identity in _in_flight:
        logger.debug("Dedup: %s already in flight, skipping", identity)
        return False
    _in_flight.add(identity)
    return True


def release(identity: str) -> None:
    _in_flight.discard(identity)


def is_in_flight(identity: str) -> bool:
    return identity in _in_flight


def in_flight() -> set[str]:
    """Return a copy of the identities currently queued or running."""
    return _in_flight.copy()


def clear() -> None:
    """Clear all flags. Only for testing."""
    _in_flight.clear()
