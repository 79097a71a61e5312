"""
Reminder types and the per-visit reminder scheduler.

The scheduler only decides *whether* a reminder is due. Delivery is handed to
a reminder sink (anything with ``deliver(reminder)``), and a failing sink is
logged without touching the scheduler's bookkeeping.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Protocol, Union

logger = logging.getLogger(__name__)

# How often the elapsed minutes are sampled while inside (seconds)
REMINDER_CHECK_INTERVAL = int(os.getenv("REMINDER_CHECK_INTERVAL_SECONDS", "60"))

# Break reminders every 30 minutes of elapsed time
BREAK_INTERVAL_MINUTES = 30

# Time-spent reminders go out one minute before each of these marks
TIME_SPENT_MARKS = (15, 30, 45, 60, 75, 90, 105, 120)

LIBRARY_NAME = os.getenv("LIBRARY_NAME", "Perpustakaan Tun Abdul Razak UiTM")


@dataclass(frozen=True)
class SilentModeReminder:
    pass


@dataclass(frozen=True)
class BreakReminder:
    minutes_elapsed: int


@dataclass(frozen=True)
class TimeSpentReminder:
    minutes_elapsed: int


@dataclass(frozen=True)
class WelcomeNotice:
    pass


@dataclass(frozen=True)
class ExitNotice:
    duration_text: str


Reminder = Union[SilentModeReminder, BreakReminder, TimeSpentReminder, WelcomeNotice, ExitNotice]


class ReminderSink(Protocol):
    def deliver(self, reminder: Reminder) -> None:
        ...


def render_notification(reminder: Reminder) -> tuple[str, str]:
    """Title and body text for a reminder."""
    if isinstance(reminder, SilentModeReminder):
        return (
            "🔇 Silent Mode Reminder",
            "Please switch your phone to silent mode while in the library.",
        )
    if isinstance(reminder, BreakReminder):
        return (
            "☕ Time for a break!",
            f"You have been studying for {reminder.minutes_elapsed} minutes. "
            "Take a short break.",
        )
    if isinstance(reminder, TimeSpentReminder):
        return (
            "⏱ Time check",
            f"You have spent {reminder.minutes_elapsed} minutes in the library.",
        )
    if isinstance(reminder, WelcomeNotice):
        return (f"Welcome to {LIBRARY_NAME}", "Please switch your phone to silent.")
    if isinstance(reminder, ExitNotice):
        return (
            "Thank you",
            "Thanks for visiting the library. "
            f"You spent {reminder.duration_text} in the library.",
        )
    raise TypeError(f"Unknown reminder type: {type(reminder).__name__}")


@dataclass
class ReminderCursor:
    """Marks already fired during the current visit."""

    last_break_mark: int = 0
    last_time_spent_mark: int = 0
    silent_sent: bool = False


class ReminderScheduler:
    def __init__(self, sink: ReminderSink) -> None:
        self._sink = sink
        self.cursor = ReminderCursor()

    def on_enter(self) -> None:
        """Reset the cursor and send this visit's silent-mode reminder."""
        self.cursor = ReminderCursor()
        self.send_silent_mode_reminder()

    def on_exit(self) -> None:
        # Next entry starts a fresh cursor in on_enter; nothing is re-armed here.
        logger.debug(
            "Visit ended (break mark=%d, time-spent mark=%d)",
            self.cursor.last_break_mark,
            self.cursor.last_time_spent_mark,
        )

    def send_silent_mode_reminder(self, force: bool = False) -> bool:
        """
        Send the silent-mode reminder once per visit, or always with ``force``.

        Returns:
            True if a reminder was handed to the sink
        """
        if not force and self.cursor.silent_sent:
            return False
        self.cursor.silent_sent = True
        self._emit(SilentModeReminder())
        return True

    def check_minute(self, minutes: int) -> list[Reminder]:
        """
        Evaluate the minute-gated rules for ``minutes`` of elapsed time.

        Returns:
            The reminders emitted for this sample (possibly empty)
        """
        emitted: list[Reminder] = []

        if (
            minutes >= BREAK_INTERVAL_MINUTES
            and minutes % BREAK_INTERVAL_MINUTES == 0
            and minutes > self.cursor.last_break_mark
        ):
            self.cursor.last_break_mark = minutes
            emitted.append(BreakReminder(minutes))

        if minutes + 1 in TIME_SPENT_MARKS and minutes > self.cursor.last_time_spent_mark:
            self.cursor.last_time_spent_mark = minutes
            emitted.append(TimeSpentReminder(minutes + 1))
            logger.info("✓ %d minute reminder due", minutes + 1)

        for reminder in emitted:
            self._emit(reminder)
        return emitted

    def request_break_reminder(self, minutes: int) -> bool:
        """Manual break reminder; refused before the first break interval."""
        if minutes < BREAK_INTERVAL_MINUTES:
            logger.info(
                "Break reminder refused: %d minute(s) studied, need at least %d",
                minutes,
                BREAK_INTERVAL_MINUTES,
            )
            return False
        self._emit(BreakReminder(minutes))
        return True

    def _emit(self, reminder: Reminder) -> None:
        logger.info("Reminder: %s", reminder)
        try:
            self._sink.deliver(reminder)
        except Exception as e:
            logger.error(f"Reminder delivery failed for {reminder}: {e}")
