"""Tests for the check-in and manual-action HTTP endpoints."""
from __future__ import annotations

import sys
import tempfile
from pathlib import Path
import unittest
from unittest.mock import patch

# Ensure src/ and the repo root are importable when running the test directly
ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
for path in (SRC, ROOT):
    if str(path) not in sys.path:
        sys.path.insert(0, str(path))

import web_server  # noqa: E402  pylint: disable=wrong-import-position
from student_store import StudentStore  # noqa: E402


class WebServerTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self._tmp.cleanup)
        store = StudentStore(str(Path(self._tmp.name) / "store.json"))
        patcher = patch.object(web_server, "store", store)
        patcher.start()
        self.addCleanup(patcher.stop)
        self.store = store
        self.client = web_server.app.test_client()

    def test_checkin_saves_student_id(self) -> None:
        response = self.client.post("/api/checkin", json={"studentId": " 2023123456 "})

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.get_json()["studentId"], "2023123456")
        self.assertEqual(self.store.get_student_id(), "2023123456")

    def test_checkin_validation_error(self) -> None:
        response = self.client.post("/api/checkin", json={"studentId": "123"})

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.get_json()["error"], "Matric seems too short")

    def test_checkin_without_body(self) -> None:
        response = self.client.post("/api/checkin")
        self.assertEqual(response.status_code, 400)

    def test_checkin_numeric_student_id(self) -> None:
        response = self.client.post("/api/checkin", json={"studentId": 2023123456})

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.get_json()["error"], "Enter matric number")
        self.assertEqual(self.store.get_student_id(), "")

    def test_checkin_body_not_an_object(self) -> None:
        response = self.client.post("/api/checkin", json=["2023123456"])

        self.assertEqual(response.status_code, 400)
        self.assertEqual(self.store.get_student_id(), "")

    def test_get_checkin(self) -> None:
        self.assertFalse(self.client.get("/api/checkin").get_json()["checkedIn"])

        self.store.set_student_id("2023123456")
        body = self.client.get("/api/checkin").get_json()

        self.assertEqual(body, {"studentId": "2023123456", "checkedIn": True})

    @patch("web_server.command_queue.send_command")
    def test_manual_action_forwarded(self, mock_send) -> None:
        response = self.client.post("/api/actions/silent_reminder")

        self.assertEqual(response.status_code, 202)
        mock_send.assert_called_once_with("silent_reminder")

    @patch("web_server.command_queue.send_command", side_effect=ConnectionRefusedError())
    def test_manual_action_tracker_down(self, _mock_send) -> None:
        response = self.client.post("/api/actions/break_reminder")
        self.assertEqual(response.status_code, 503)

    def test_unknown_action(self) -> None:
        response = self.client.post("/api/actions/self_destruct")
        self.assertEqual(response.status_code, 404)


if __name__ == "__main__":
    unittest.main()
