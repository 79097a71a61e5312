"""Elapsed-time counter for the current library visit."""

from __future__ import annotations

import logging
import os
from typing import Any, Callable, Protocol

logger = logging.getLogger(__name__)

# Counter granularity (seconds)
CLOCK_TICK_SECONDS = int(os.getenv("CLOCK_TICK_SECONDS", "1"))


class Timers(Protocol):
    """Periodic timer facility provided by the event loop."""

    def call_every(self, seconds: int, callback: Callable[[], None]) -> Any:
        ...

    def cancel(self, handle: Any) -> None:
        ...


def format_duration(seconds: int) -> str:
    """Format as HH:MM:SS, or MM:SS under one hour."""
    seconds = max(0, int(seconds))
    hours, remainder = divmod(seconds, 3600)
    minutes, secs = divmod(remainder, 60)
    if hours > 0:
        return f"{hours:02d}:{minutes:02d}:{secs:02d}"
    return f"{minutes:02d}:{secs:02d}"


class SessionClock:
    """
    Counts whole seconds while the student is inside.

    Only one counter runs at a time: ``start`` cancels any running counter
    before resetting to zero.
    """

    def __init__(self, timers: Timers, tick_seconds: int = CLOCK_TICK_SECONDS) -> None:
        self._timers = timers
        self._tick_seconds = tick_seconds
        self._handle: Any = None
        self._elapsed_seconds = 0

    @property
    def running(self) -> bool:
        return self._handle is not None

    @property
    def elapsed_seconds(self) -> int:
        return self._elapsed_seconds

    @property
    def elapsed_minutes(self) -> int:
        return self._elapsed_seconds // 60

    def start(self) -> None:
        if self._handle is not None:
            logger.warning("Session clock already running - restarting from zero")
            self._cancel_timer()
        self._elapsed_seconds = 0
        self._handle = self._timers.call_every(self._tick_seconds, self.tick)
        logger.info("Session clock started")

    def tick(self) -> None:
        if self._handle is None:
            return
        self._elapsed_seconds += self._tick_seconds

    def stop(self) -> int:
        """
        Stop and reset the counter.

        Returns:
            The elapsed seconds at the moment of stopping
        """
        elapsed = self._elapsed_seconds
        self._cancel_timer()
        self._elapsed_seconds = 0
        logger.info("Session clock stopped at %s", format_duration(elapsed))
        return elapsed

    def _cancel_timer(self) -> None:
        if self._handle is not None:
            self._timers.cancel(self._handle)
            self._handle = None
