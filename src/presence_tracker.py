import logging
import os
import signal
import time
from datetime import datetime
from queue import Queue
from typing import Any, Callable

from dotenv import load_dotenv
from gi.repository import GLib

import bluetooth_scanner
import command_queue
from beacon_matcher import ScanObservation, TargetBeaconIdentity, load_target_from_env
from logging_utils import configure_root_logger
from notification_sink import DesktopNotificationSink
from presence_machine import EXIT_TIMEOUT_SECONDS, PRESENCE_CHECK_INTERVAL, PresenceTracker
from reminders import REMINDER_CHECK_INTERVAL, ReminderScheduler
from session_clock import CLOCK_TICK_SECONDS, SessionClock
from session_recorder import ConvexSessionRecorder, shutdown_convex_executor
from student_store import STUDENT_STORE_PATH, StudentStore
from study_session import StudySessionController

# Load environment variables
load_dotenv()

logger = logging.getLogger(__name__)

# How often manual actions from the web server are picked up (seconds)
COMMAND_POLL_INTERVAL = int(os.getenv("COMMAND_POLL_INTERVAL_SECONDS", "1"))


class GLibTimers:
    """Periodic callbacks on the GLib main loop."""

    def __init__(self) -> None:
        self._active: set[int] = set()

    def call_every(self, seconds: int, callback: Callable[[], None]) -> int:
        def _fire() -> bool:
            try:
                callback()
            except Exception:
                logger.exception("Error in timer callback %s", getattr(callback, "__name__", callback))
            return True

        source_id = GLib.timeout_add_seconds(seconds, _fire)
        self._active.add(source_id)
        return source_id

    def cancel(self, handle: Any) -> None:
        if handle in self._active:
            self._active.discard(handle)
            GLib.source_remove(handle)

    def cancel_all(self) -> None:
        for source_id in list(self._active):
            self.cancel(source_id)


class PresenceService:
    """
    Owns the presence tracker and everything hanging off it.

    ``start`` subscribes to the scan source and arms the periodic timers;
    ``stop`` cancels them all. Events that arrive after ``stop`` are ignored.
    """

    def __init__(
        self,
        target: TargetBeaconIdentity,
        scanner: bluetooth_scanner.BeaconScanner,
        controller: StudySessionController,
        timers: GLibTimers,
        commands: Queue | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.tracker = PresenceTracker(target, exit_timeout=EXIT_TIMEOUT_SECONDS)
        self.tracker.add_listener(controller.handle_event)
        self.scanner = scanner
        self.controller = controller
        self._timers = timers
        self._commands = commands
        self._clock = clock
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    def start(self) -> bool:
        """
        Start scanning and ticking.

        Returns:
            True if the scan source started; False if it is unavailable, in
            which case presence stays Outside
        """
        self._running = True
        if self._commands is not None:
            self._timers.call_every(COMMAND_POLL_INTERVAL, self._process_commands)

        try:
            self.scanner.start(self._on_observations)
        except bluetooth_scanner.PermissionDeniedError as e:
            logger.error(f"Beacon scan blocked: permissions not granted ({e})")
            return False
        except bluetooth_scanner.AdapterUnavailableError as e:
            logger.error(f"Beacon scan blocked: Bluetooth is unavailable ({e})")
            return False
        except bluetooth_scanner.ScanSourceError as e:
            logger.error(f"Beacon scan failed: {e}")
            return False

        self._timers.call_every(PRESENCE_CHECK_INTERVAL, self._on_presence_tick)
        return True

    def stop(self) -> None:
        if not self._running:
            return
        self._running = False
        self._timers.cancel_all()
        self.scanner.stop()
        self.controller.shutdown()
        logger.info("Presence service stopped")

    def _on_observations(self, observations: list[ScanObservation], now: float) -> None:
        if not self._running:
            return
        self.tracker.handle_observations(observations, now)

    def _on_presence_tick(self) -> None:
        if not self._running:
            return
        self.tracker.tick(self._clock())

    def _process_commands(self) -> None:
        if not self._running or self._commands is None:
            return
        for command in command_queue.drain_commands(self._commands):
            logger.info("Manual action: %s", command)
            if command == command_queue.SILENT_REMINDER:
                self.controller.force_silent_reminder()
            elif command == command_queue.BREAK_REMINDER:
                self.controller.request_break_reminder()
            elif command == command_queue.SHOW_RULES:
                self.controller.show_rules()


def build_service(
    target: TargetBeaconIdentity, timers: GLibTimers, commands: Queue | None = None
) -> PresenceService:
    """Wire the production components together."""
    sink = DesktopNotificationSink()
    controller = StudySessionController(
        clock=SessionClock(timers, tick_seconds=CLOCK_TICK_SECONDS),
        scheduler=ReminderScheduler(sink),
        sink=sink,
        recorder=ConvexSessionRecorder(),
        store=StudentStore(STUDENT_STORE_PATH),
        timers=timers,
        reminder_interval=REMINDER_CHECK_INTERVAL,
    )
    return PresenceService(
        target=target,
        scanner=bluetooth_scanner.BeaconScanner(),
        controller=controller,
        timers=timers,
        commands=commands,
    )


def run_presence_tracker() -> None:
    """
    Main loop for the presence tracker.

    Scan results and timers are all dispatched on one GLib main loop, so the
    presence state, session clock and reminder cursor never see concurrent
    mutation.
    """
    target = load_target_from_env()
    logger.info("Starting Presence Tracker")
    logger.info(f"Target beacon: {target.uuid} major={target.major} minor={target.minor}")
    logger.info(f"Presence check interval: {PRESENCE_CHECK_INTERVAL} seconds")
    logger.info(f"Exit timeout: {EXIT_TIMEOUT_SECONDS} seconds")
    logger.info(f"Reminder check interval: {REMINDER_CHECK_INTERVAL} seconds")
    logger.info(f"Student store: {STUDENT_STORE_PATH}")

    bluetooth_scanner.init_dbus()

    commands: Queue | None
    try:
        commands = command_queue.start_queue_server()
    except OSError as e:
        logger.error(f"Command queue unavailable, manual actions disabled: {e}")
        commands = None

    timers = GLibTimers()
    service = build_service(target, timers, commands)
    mainloop = GLib.MainLoop()

    def _handle_signal(signum, frame):
        logger.info(f"Received signal {signum}, shutting down...")
        mainloop.quit()

    signal.signal(signal.SIGINT, _handle_signal)
    signal.signal(signal.SIGTERM, _handle_signal)

    logger.info(f"Started at {datetime.now().isoformat()}")
    if not service.start():
        logger.warning("Presence detection inactive - status will remain Outside")

    try:
        mainloop.run()
    except KeyboardInterrupt:
        logger.info("Presence tracker stopped by user")
    finally:
        service.stop()
        logger.info("Shutting down Convex executor...")
        shutdown_convex_executor(wait=True)
        logger.info("Presence tracker shutdown complete")


def main() -> None:
    """Entry point for the presence tracker."""
    configure_root_logger("presence_tracker.log", level=logging.INFO)
    try:
        run_presence_tracker()
    except Exception as e:
        logger.critical(f"Presence tracker crashed: {e}")
        raise


if __name__ == "__main__":
    main()
