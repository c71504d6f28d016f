"""Background thread that periodically drops expired challenges and sessions."""
from __future__ import annotations

import logging
import threading
from typing import Optional, Protocol

from .errors import StoreUnavailable

__all__ = ["is_running", "start_sweeper", "stop_sweeper"]

_MIN_INTERVAL = 0.01

_sweeper_thread: Optional[threading.Thread] = None
_stop_event = threading.Event()


class Sweepable(Protocol):
    def sweep_expired(self) -> int:
        ...


def _sweeper_loop(manager: Sweepable, interval: float, logger: logging.Logger) -> None:
    logger.info("Starting expired session sweeper (every %s seconds).", interval)
    while not _stop_event.wait(interval):
        try:
            removed = manager.sweep_expired()
        except StoreUnavailable as exc:
            logger.warning("Expired session sweep failed: %s", exc)
            continue
        if removed:
            logger.debug("Sweep removed %d expired record(s).", removed)

    logger.info("Stopping expired session sweeper.")


def start_sweeper(manager: Sweepable, interval: float, logger: Optional[logging.Logger] = None) -> None:
    """Launch the sweeper thread if not already running."""

    global _sweeper_thread
    if _sweeper_thread and _sweeper_thread.is_alive():
        return

    logger = logger or logging.getLogger(__name__)
    _stop_event.clear()
    _sweeper_thread = threading.Thread(
        target=_sweeper_loop,
        args=(manager, max(float(interval), _MIN_INTERVAL), logger),
        name="passkey-session-sweeper",
        daemon=True,
    )
    _sweeper_thread.start()


def stop_sweeper() -> None:
    """Request the sweeper thread to stop (primarily for tests)."""

    _stop_event.set()
    if _sweeper_thread and _sweeper_thread.is_alive():
        _sweeper_thread.join(timeout=5)


def is_running() -> bool:
    return bool(_sweeper_thread and _sweeper_thread.is_alive())
