"""
Inside/outside presence state machine for the library beacon.

The tracker is fed two kinds of input on the event loop:

- ``handle_observations(observations, now)`` for every batch the scan source
  delivers. Any match refreshes ``last_seen_at`` and, when outside, enters.
- ``tick(now)`` on a fixed interval. There is no "beacon gone" signal in BLE,
  so absence is inferred here: once nothing has matched for more than
  ``exit_timeout`` seconds the tracker exits.

Each transition emits exactly one ``EnterEvent`` or ``ExitEvent`` to the
registered listeners.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Callable, Iterable, Union

from beacon_matcher import ScanObservation, TargetBeaconIdentity, match

logger = logging.getLogger(__name__)

# How often the runtime calls tick() (seconds)
PRESENCE_CHECK_INTERVAL = int(os.getenv("PRESENCE_CHECK_INTERVAL_SECONDS", "5"))

# Exit once the beacon has been unseen for strictly longer than this (seconds)
EXIT_TIMEOUT_SECONDS = float(os.getenv("EXIT_TIMEOUT_SECONDS", "10"))


@dataclass(frozen=True)
class EnterEvent:
    at: float


@dataclass(frozen=True)
class ExitEvent:
    at: float


PresenceEvent = Union[EnterEvent, ExitEvent]
PresenceListener = Callable[[PresenceEvent], None]


@dataclass
class PresenceState:
    is_inside: bool = False
    last_seen_at: float | None = None
    last_enter_at: float | None = None
    last_exit_at: float | None = None


class PresenceTracker:
    """Owns the single ``PresenceState`` and its enter/exit hysteresis."""

    def __init__(
        self,
        target: TargetBeaconIdentity,
        exit_timeout: float = EXIT_TIMEOUT_SECONDS,
    ) -> None:
        self.target = target
        self.exit_timeout = exit_timeout
        self._state = PresenceState()
        self._listeners: list[PresenceListener] = []

    @property
    def state(self) -> PresenceState:
        """A copy of the current state; mutate only through the tracker."""
        return PresenceState(
            is_inside=self._state.is_inside,
            last_seen_at=self._state.last_seen_at,
            last_enter_at=self._state.last_enter_at,
            last_exit_at=self._state.last_exit_at,
        )

    @property
    def is_inside(self) -> bool:
        return self._state.is_inside

    def add_listener(self, listener: PresenceListener) -> None:
        if not callable(listener):
            raise ValueError("Listener must be callable")
        self._listeners.append(listener)

    def remove_listener(self, listener: PresenceListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def handle_observations(
        self, observations: Iterable[ScanObservation], now: float
    ) -> EnterEvent | None:
        """
        Apply the matcher to a batch of observations.

        Returns:
            The EnterEvent if this batch caused a transition, None otherwise
        """
        found = any(match(observation, self.target) for observation in observations)
        if not found:
            return None

        self._state.last_seen_at = now
        if self._state.is_inside:
            return None

        self._state.is_inside = True
        self._state.last_enter_at = now
        logger.info("Beacon %s detected - presence Outside -> Inside", self.target.uuid)
        event = EnterEvent(at=now)
        self._emit(event)
        return event

    def tick(self, now: float) -> ExitEvent | None:
        """
        Periodic absence check.

        Returns:
            The ExitEvent if the beacon timed out on this tick, None otherwise
        """
        if not self._state.is_inside:
            return None

        last_seen = self._state.last_seen_at
        if last_seen is not None and now - last_seen <= self.exit_timeout:
            return None

        self._state.is_inside = False
        self._state.last_exit_at = now
        if last_seen is None:
            logger.info("No beacon sighting on record - presence Inside -> Outside")
        else:
            logger.info(
                "Beacon unseen for %.1fs (> %.1fs) - presence Inside -> Outside",
                now - last_seen,
                self.exit_timeout,
            )
        event = ExitEvent(at=now)
        self._emit(event)
        return event

    def _emit(self, event: PresenceEvent) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("Error in presence listener for %s", event)
