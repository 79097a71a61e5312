"""Tests for the fire-and-forget Convex session recorder."""
from __future__ import annotations

import sys
from concurrent.futures import Future
from datetime import datetime
from pathlib import Path
import unittest
from unittest.mock import MagicMock, patch

# Ensure src/ is importable when running the test directly
ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

import session_recorder  # noqa: E402  pylint: disable=wrong-import-position
from session_recorder import SessionRecord  # noqa: E402


def _finished(exc: Exception | None = None) -> Future:
    future: Future = Future()
    if exc is None:
        future.set_result({"ok": True})
    else:
        future.set_exception(exc)
    return future


class SessionRecordTests(unittest.TestCase):
    def test_convex_args(self) -> None:
        start = 1_700_000_000.0
        record = SessionRecord(student_id="2023123456", start=start, end=start + 2537)

        args = record.to_convex_args()

        self.assertEqual(args["studentId"], "2023123456")
        self.assertEqual(args["durationSeconds"], 2537)
        self.assertEqual(args["start"], datetime.fromtimestamp(start).isoformat())
        self.assertEqual(args["end"], datetime.fromtimestamp(start + 2537).isoformat())


class RecordSessionTests(unittest.TestCase):
    def setUp(self) -> None:
        session_recorder._convex_consecutive_failures = 0
        session_recorder._convex_circuit_open_until = 0.0

    @patch("session_recorder.get_convex_client")
    def test_record_session_calls_mutation(self, mock_get_client) -> None:
        client = MagicMock()
        mock_get_client.return_value = client
        record = SessionRecord(student_id="2023123456", start=0.0, end=60.0)

        future = session_recorder.record_session(record)

        self.assertIsNotNone(future)
        future.result(timeout=5)
        client.mutation.assert_called_once_with(
            session_recorder.RECORD_SESSION_MUTATION, record.to_convex_args()
        )

    @patch("session_recorder.get_convex_client")
    def test_open_circuit_skips_submission(self, mock_get_client) -> None:
        session_recorder._convex_circuit_open_until = float("inf")

        with self.assertLogs("session_recorder", level="WARNING"):
            future = session_recorder.record_session(
                SessionRecord(student_id="2023123456", start=0.0, end=60.0)
            )

        self.assertIsNone(future)
        mock_get_client.assert_not_called()

    def test_consecutive_failures_open_circuit(self) -> None:
        with self.assertLogs("session_recorder", level="ERROR"):
            for _ in range(session_recorder.MAX_CONVEX_CONSECUTIVE_FAILURES):
                session_recorder._on_call_done(_finished(RuntimeError("boom")), "recordSession", 0.0)

        self.assertGreater(session_recorder._convex_circuit_open_until, 0.0)
        self.assertGreater(session_recorder._circuit_remaining(), 0)

    def test_success_resets_failure_count(self) -> None:
        session_recorder._on_call_done(_finished(RuntimeError("boom")), "recordSession", 0.0)
        session_recorder._on_call_done(_finished(), "recordSession", 0.0)

        self.assertEqual(session_recorder._convex_consecutive_failures, 0)

    def test_missing_deployment_url_raises(self) -> None:
        with patch.object(session_recorder, "_convex_client", None), patch.object(
            session_recorder, "DEPLOYMENT_URL", None
        ):
            with self.assertRaises(ValueError):
                session_recorder.get_convex_client()

    @patch("session_recorder.record_session")
    def test_recorder_collaborator_delegates(self, mock_record) -> None:
        record = SessionRecord(student_id="2023123456", start=0.0, end=1.0)
        session_recorder.ConvexSessionRecorder().record(record)
        mock_record.assert_called_once_with(record)


if __name__ == "__main__":
    unittest.main()
