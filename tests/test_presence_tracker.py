"""Tests for the presence service lifecycle and manual-action dispatch."""
from __future__ import annotations

import importlib.util
import sys
from pathlib import Path
from queue import Queue
import unittest
from unittest.mock import MagicMock, patch

# Ensure src/ is importable when running the test directly
ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
for path in (SRC, Path(__file__).resolve().parent):
    if str(path) not in sys.path:
        sys.path.insert(0, str(path))

HAS_RUNTIME = (
    importlib.util.find_spec("dbus") is not None
    and importlib.util.find_spec("gi") is not None
)

if HAS_RUNTIME:
    import bluetooth_scanner  # noqa: E402
    import command_queue  # noqa: E402
    from beacon_matcher import ScanObservation, TargetBeaconIdentity, encode_ibeacon  # noqa: E402
    from fakes import FakeTimers  # noqa: E402
    from presence_machine import EnterEvent, ExitEvent  # noqa: E402
    from presence_tracker import PresenceService  # noqa: E402

    TARGET = TargetBeaconIdentity(
        uuid="fda50693-a4e2-4fb1-afcf-c6eb07647825", major=10011, minor=19641
    )


class FakeScanner:
    def __init__(self, error: Exception | None = None) -> None:
        self.error = error
        self.on_batch = None
        self.stopped = False

    def start(self, on_batch) -> None:
        if self.error is not None:
            raise self.error
        self.on_batch = on_batch

    def stop(self) -> None:
        self.stopped = True


@unittest.skipUnless(HAS_RUNTIME, "dbus-python / PyGObject not installed")
class PresenceServiceTests(unittest.TestCase):
    def setUp(self) -> None:
        self.timers = FakeTimers()
        self.controller = MagicMock()
        self.now = 0.0

    def _service(self, scanner: FakeScanner, commands: Queue | None = None) -> "PresenceService":
        return PresenceService(
            target=TARGET,
            scanner=scanner,
            controller=self.controller,
            timers=self.timers,
            commands=commands,
            clock=lambda: self.now,
        )

    def _beacon(self) -> list:
        return [ScanObservation(0x004C, encode_ibeacon(TARGET), self.now)]

    def test_start_arms_presence_tick(self) -> None:
        scanner = FakeScanner()
        service = self._service(scanner)

        self.assertTrue(service.start())
        self.assertEqual(self.timers.intervals(), [5])
        self.assertIsNotNone(scanner.on_batch)

    def test_enter_and_exit_flow_through_to_controller(self) -> None:
        scanner = FakeScanner()
        service = self._service(scanner)
        service.start()

        scanner.on_batch(self._beacon(), 0.0)
        for self.now in (5.0, 10.0, 15.0):
            self.timers.fire(5)

        events = [c.args[0] for c in self.controller.handle_event.call_args_list]
        self.assertEqual(events, [EnterEvent(at=0.0), ExitEvent(at=15.0)])

    def test_unavailable_radio_keeps_presence_outside(self) -> None:
        for error in (
            bluetooth_scanner.AdapterUnavailableError("powered off"),
            bluetooth_scanner.PermissionDeniedError("not authorized"),
            bluetooth_scanner.ScanSourceError("transport error"),
        ):
            with self.subTest(error=type(error).__name__):
                self.timers = FakeTimers()
                service = self._service(FakeScanner(error))

                with self.assertLogs("presence_tracker", level="ERROR"):
                    self.assertFalse(service.start())

                self.assertNotIn(5, self.timers.intervals())
                self.assertFalse(service.tracker.is_inside)

    def test_stop_cancels_everything_and_ignores_late_events(self) -> None:
        scanner = FakeScanner()
        service = self._service(scanner, commands=Queue())
        service.start()
        on_batch = scanner.on_batch

        service.stop()
        on_batch(self._beacon(), 1.0)

        self.assertTrue(scanner.stopped)
        self.assertEqual(self.timers.active, {})
        self.assertFalse(service.tracker.is_inside)
        self.controller.shutdown.assert_called_once()
        self.controller.handle_event.assert_not_called()

    def test_manual_actions_dispatched_on_poll(self) -> None:
        commands: Queue = Queue()
        service = self._service(FakeScanner(), commands=commands)
        service.start()

        commands.put({"command": command_queue.SILENT_REMINDER})
        commands.put({"command": command_queue.BREAK_REMINDER})
        commands.put({"command": command_queue.SHOW_RULES})
        self.timers.fire(1)

        self.controller.force_silent_reminder.assert_called_once()
        self.controller.request_break_reminder.assert_called_once()
        self.controller.show_rules.assert_called_once()

    def test_command_poll_uses_configured_interval(self) -> None:
        with patch("presence_tracker.COMMAND_POLL_INTERVAL", 3):
            service = self._service(FakeScanner(), commands=Queue())
            service.start()

        self.assertEqual(self.timers.intervals(), [3, 5])


if __name__ == "__main__":
    unittest.main()
