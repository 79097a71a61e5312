"""
Append completed library visits to Convex.

Recording is fire-and-forget: ``record_session`` submits the mutation to a
small thread pool and returns immediately, so a slow or unreachable Convex
deployment never stalls the presence loop. Outcomes are logged from the
worker thread, and repeated failures open a circuit breaker that skips
submissions for a while.
"""

from __future__ import annotations

import logging
import os
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, TypeVar

import convex
from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)

# Get Convex deployment URL from environment
CONVEX_DEPLOYMENT_URL = os.getenv("CONVEX_DEPLOYMENT_URL")
CONVEX_SELF_HOSTED_URL = os.getenv("CONVEX_SELF_HOSTED_URL")
CONVEX_SELF_HOSTED_ADMIN_KEY = os.getenv("CONVEX_SELF_HOSTED_ADMIN_KEY")
DEPLOYMENT_URL = CONVEX_SELF_HOSTED_URL or CONVEX_DEPLOYMENT_URL

RECORD_SESSION_MUTATION = "sessions:recordSession"

MAX_CONVEX_CONSECUTIVE_FAILURES = int(
    os.getenv("MAX_CONVEX_CONSECUTIVE_FAILURES", "3")
)
CONVEX_CIRCUIT_OPEN_SECONDS = float(os.getenv("CONVEX_CIRCUIT_OPEN_SECONDS", "30"))

T = TypeVar("T")


@dataclass(frozen=True)
class SessionRecord:
    student_id: str
    start: float
    end: float

    @property
    def duration_seconds(self) -> int:
        return int(round(self.end - self.start))

    def to_convex_args(self) -> dict[str, Any]:
        return {
            "studentId": self.student_id,
            "start": datetime.fromtimestamp(self.start).isoformat(),
            "end": datetime.fromtimestamp(self.end).isoformat(),
            "durationSeconds": self.duration_seconds,
        }


# Convex client will be initialized lazily to avoid startup hangs
_convex_client: convex.ConvexClient | None = None
_convex_executor = ThreadPoolExecutor(max_workers=2, thread_name_prefix="convex")

_breaker_lock = threading.Lock()
_convex_consecutive_failures = 0
_convex_circuit_open_until = 0.0


def get_convex_client() -> convex.ConvexClient:
    """Get or initialize the Convex client."""
    global _convex_client
    if _convex_client is None:
        if not DEPLOYMENT_URL:
            raise ValueError(
                "CONVEX_DEPLOYMENT_URL or CONVEX_SELF_HOSTED_URL environment variable is not set. "
                "Please create a .env file with one of these variables."
            )
        logger.info("Initializing Convex client...")
        _convex_client = convex.ConvexClient(DEPLOYMENT_URL)
        if CONVEX_SELF_HOSTED_ADMIN_KEY:
            _convex_client.client.set_admin_auth(CONVEX_SELF_HOSTED_ADMIN_KEY)
        logger.info("Convex client initialized")
    return _convex_client


def _circuit_remaining() -> float:
    with _breaker_lock:
        return max(0.0, _convex_circuit_open_until - time.monotonic())


def _on_call_done(future: Future, description: str, start: float) -> None:
    global _convex_consecutive_failures, _convex_circuit_open_until

    duration = time.monotonic() - start
    exc = future.exception()
    with _breaker_lock:
        if exc is None:
            if _convex_consecutive_failures >= MAX_CONVEX_CONSECUTIVE_FAILURES:
                logger.info("Convex circuit breaker CLOSED - resuming operations")
            _convex_consecutive_failures = 0
            logger.info("Convex %s succeeded in %.2fs", description, duration)
            return

        _convex_consecutive_failures += 1
        logger.error(
            "Convex %s failed after %.2fs (%d/%d): %s",
            description,
            duration,
            _convex_consecutive_failures,
            MAX_CONVEX_CONSECUTIVE_FAILURES,
            exc,
        )
        if _convex_consecutive_failures >= MAX_CONVEX_CONSECUTIVE_FAILURES:
            _convex_circuit_open_until = time.monotonic() + CONVEX_CIRCUIT_OPEN_SECONDS
            logger.error(
                "Convex circuit breaker OPEN for %.1fs after %d consecutive failures",
                CONVEX_CIRCUIT_OPEN_SECONDS,
                _convex_consecutive_failures,
            )


def _submit_convex_call(fn: Callable[[], T], description: str) -> Future | None:
    """Queue a Convex call on the shared executor without waiting for it."""
    remaining = _circuit_remaining()
    if remaining > 0:
        logger.warning(
            "Circuit breaker is open (%.1fs remaining), skipping Convex %s",
            remaining,
            description,
        )
        return None

    start = time.monotonic()
    try:
        future = _convex_executor.submit(fn)
    except RuntimeError as e:
        # Executor already shut down
        logger.error("Could not submit Convex %s: %s", description, e)
        return None
    future.add_done_callback(lambda f: _on_call_done(f, description, start))
    return future


def shutdown_convex_executor(wait: bool = False) -> None:
    """Shut down the shared Convex executor."""

    _convex_executor.shutdown(wait=wait)


def record_session(record: SessionRecord) -> Future | None:
    """
    Append a completed visit via the recordSession mutation.

    Returns:
        The pending future, or None if the call was skipped
    """
    args = record.to_convex_args()

    def _mutation():
        return get_convex_client().mutation(RECORD_SESSION_MUTATION, args)

    logger.info(
        "→ record_session: student=%s duration=%ss",
        record.student_id,
        args["durationSeconds"],
    )
    return _submit_convex_call(_mutation, "recordSession")


class ConvexSessionRecorder:
    """Session recorder collaborator backed by ``record_session``."""

    def record(self, record: SessionRecord) -> None:
        record_session(record)
