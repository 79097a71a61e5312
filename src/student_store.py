"""
Small JSON key-value store for the checked-in student.

Holds two values:
- ``studentId``: the matric number entered at check-in
- ``hideRules``: whether the library-rules prompt was dismissed for good

The file is re-read on every access so a check-in written by the web server
process is picked up by the tracker without a restart.
"""

from __future__ import annotations

import json
import logging
import os
import threading
from typing import Any

logger = logging.getLogger(__name__)

STUDENT_STORE_PATH = os.getenv("STUDENT_STORE_PATH", "data/student_store.json")

STUDENT_ID_KEY = "studentId"
HIDE_RULES_KEY = "hideRules"

# Check-in validation
MIN_STUDENT_ID_LENGTH = 5


def validate_student_id(value: Any) -> str:
    """
    Normalize a matric number entered at check-in.

    Raises:
        ValueError: if the value is missing, not a string, or too short
    """
    if not isinstance(value, str):
        raise ValueError("Enter matric number")
    student_id = value.strip()
    if not student_id:
        raise ValueError("Enter matric number")
    if len(student_id) < MIN_STUDENT_ID_LENGTH:
        raise ValueError("Matric seems too short")
    return student_id


class StudentStore:
    def __init__(self, path: str = STUDENT_STORE_PATH) -> None:
        self.path = path
        self._lock = threading.Lock()

    def _read(self) -> dict[str, Any]:
        try:
            with open(self.path, "r", encoding="utf-8") as handle:
                data = json.load(handle)
        except FileNotFoundError:
            return {}
        except (OSError, ValueError) as e:
            logger.error(f"Error reading student store {self.path}: {e}")
            return {}
        if not isinstance(data, dict):
            logger.error("Student store %s is not a JSON object, ignoring", self.path)
            return {}
        return data

    def _write(self, data: dict[str, Any]) -> None:
        directory = os.path.dirname(self.path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        tmp_path = f"{self.path}.tmp"
        with open(tmp_path, "w", encoding="utf-8") as handle:
            json.dump(data, handle, indent=2)
        os.replace(tmp_path, self.path)

    def _update(self, key: str, value: Any) -> None:
        with self._lock:
            data = self._read()
            data[key] = value
            self._write(data)

    def get_student_id(self) -> str:
        value = self._read().get(STUDENT_ID_KEY, "")
        return value if isinstance(value, str) else ""

    def set_student_id(self, student_id: str) -> str:
        """Validate and persist the student id; returns the stored value."""
        student_id = validate_student_id(student_id)
        self._update(STUDENT_ID_KEY, student_id)
        logger.info("Checked in student %s", student_id)
        return student_id

    def rules_suppressed(self) -> bool:
        return bool(self._read().get(HIDE_RULES_KEY, False))

    def set_rules_suppressed(self, suppressed: bool) -> None:
        self._update(HIDE_RULES_KEY, bool(suppressed))
        logger.info("Library rules prompt %s", "suppressed" if suppressed else "re-enabled")
