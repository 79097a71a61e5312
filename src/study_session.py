"""
Reacts to presence transitions for one student's library visit.

On enter: start the session clock, send the welcome notice, show the library
rules unless suppressed, send the silent-mode reminder, and start sampling
elapsed minutes for break / time-spent reminders.

On exit: stop the clock, hand a ``SessionRecord`` to the recorder when a
student is checked in, and send the exit notice.

Every outbound call (sink, recorder, store) is best effort. A failure is
logged and the visit bookkeeping carries on.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Protocol

from presence_machine import EnterEvent, ExitEvent, PresenceEvent
from reminders import REMINDER_CHECK_INTERVAL, ExitNotice, ReminderScheduler, ReminderSink, WelcomeNotice
from session_clock import SessionClock, Timers, format_duration
from session_recorder import SessionRecord
from student_store import StudentStore

logger = logging.getLogger(__name__)


class SessionRecorder(Protocol):
    def record(self, record: SessionRecord) -> None:
        ...


class RulesPromptSink(ReminderSink, Protocol):
    def show_rules(self, on_suppress: Callable[[], None]) -> None:
        ...


class StudySessionController:
    def __init__(
        self,
        clock: SessionClock,
        scheduler: ReminderScheduler,
        sink: RulesPromptSink,
        recorder: SessionRecorder,
        store: StudentStore,
        timers: Timers,
        reminder_interval: int = REMINDER_CHECK_INTERVAL,
    ) -> None:
        self.clock = clock
        self.scheduler = scheduler
        self.sink = sink
        self.recorder = recorder
        self.store = store
        self._timers = timers
        self._reminder_interval = reminder_interval
        self._reminder_handle: Any = None

    def handle_event(self, event: PresenceEvent) -> None:
        """Presence listener entry point."""
        if isinstance(event, EnterEvent):
            self.on_enter(event)
        elif isinstance(event, ExitEvent):
            self.on_exit(event)

    def on_enter(self, event: EnterEvent) -> None:
        logger.info("Enter detected, starting session and welcome flow")
        self.clock.start()
        self._start_reminder_timer()
        self._deliver(WelcomeNotice())
        self.show_rules_if_needed()
        self.scheduler.on_enter()

    def on_exit(self, event: ExitEvent) -> None:
        logger.info("Exit detected, ending session and exit flow")
        self._cancel_reminder_timer()
        elapsed = self.clock.stop()
        self._finalize_session(event.at, elapsed)
        self._deliver(ExitNotice(format_duration(elapsed)))
        self.scheduler.on_exit()

    def check_reminders(self) -> None:
        self.scheduler.check_minute(self.clock.elapsed_minutes)

    def force_silent_reminder(self) -> None:
        self.scheduler.send_silent_mode_reminder(force=True)

    def request_break_reminder(self) -> bool:
        return self.scheduler.request_break_reminder(self.clock.elapsed_minutes)

    def show_rules(self) -> None:
        """Re-enable and show the rules prompt on demand."""
        try:
            self.store.set_rules_suppressed(False)
        except OSError as e:
            logger.error(f"Could not reset rules flag: {e}")
        self.show_rules_if_needed()

    def show_rules_if_needed(self) -> None:
        if self.store.rules_suppressed():
            logger.debug("Library rules prompt suppressed")
            return
        try:
            self.sink.show_rules(self._suppress_rules)
        except Exception as e:
            logger.error(f"Failed to show library rules: {e}")

    def shutdown(self) -> None:
        self._cancel_reminder_timer()
        if self.clock.running:
            self.clock.stop()

    def _suppress_rules(self) -> None:
        try:
            self.store.set_rules_suppressed(True)
        except OSError as e:
            logger.error(f"Could not persist rules flag: {e}")

    def _finalize_session(self, end: float, elapsed: int) -> None:
        student_id = self.store.get_student_id()
        if not student_id:
            logger.info("No student checked in - session of %s not recorded", format_duration(elapsed))
            return
        record = SessionRecord(student_id=student_id, start=end - elapsed, end=end)
        try:
            self.recorder.record(record)
        except Exception as e:
            logger.error(f"Failed to record session for {student_id}: {e}")

    def _start_reminder_timer(self) -> None:
        self._cancel_reminder_timer()
        self._reminder_handle = self._timers.call_every(self._reminder_interval, self.check_reminders)

    def _cancel_reminder_timer(self) -> None:
        if self._reminder_handle is not None:
            self._timers.cancel(self._reminder_handle)
            self._reminder_handle = None

    def _deliver(self, reminder) -> None:
        try:
            self.sink.deliver(reminder)
        except Exception as e:
            logger.error(f"Notification delivery failed for {reminder}: {e}")
