"""Manual-action channel from the web server to the tracker process.

The tracker hosts a ``BaseManager`` server exposing one ``Queue`` of
``{"command": ...}`` items. The web server connects per request and pushes
an action; the tracker drains the queue on its event loop.
"""

from __future__ import annotations

import logging
import os
import threading
from multiprocessing.managers import BaseManager
from queue import Empty, Queue
from typing import Any

COMMAND_QUEUE_HOST = os.getenv("COMMAND_QUEUE_HOST", "127.0.0.1")
COMMAND_QUEUE_PORT = int(os.getenv("COMMAND_QUEUE_PORT", "51975"))
COMMAND_QUEUE_AUTH_KEY = os.getenv("COMMAND_QUEUE_AUTH_KEY", "library-presence")

# Manual actions understood by the tracker
SILENT_REMINDER = "silent_reminder"
BREAK_REMINDER = "break_reminder"
SHOW_RULES = "show_rules"
COMMANDS = (SILENT_REMINDER, BREAK_REMINDER, SHOW_RULES)

logger = logging.getLogger(__name__)

_commands: Queue | None = None


class CommandManager(BaseManager):
    """Serves (tracker side) or proxies (web server side) the command queue."""


def _manager() -> CommandManager:
    return CommandManager(
        address=(COMMAND_QUEUE_HOST, COMMAND_QUEUE_PORT),
        authkey=COMMAND_QUEUE_AUTH_KEY.encode("utf-8"),
    )


def start_queue_server() -> Queue:
    """
    Serve the command queue from a daemon thread.

    Returns:
        The local queue to drain; the same queue on repeated calls

    Raises:
        OSError: if the port cannot be bound
    """
    global _commands
    if _commands is not None:
        return _commands

    commands: Queue = Queue()
    CommandManager.register("get_commands", callable=lambda: commands)
    server = _manager().get_server()
    threading.Thread(target=server.serve_forever, name="CommandQueueServer", daemon=True).start()

    _commands = commands
    logger.info("Accepting manual actions on %s:%s", COMMAND_QUEUE_HOST, COMMAND_QUEUE_PORT)
    return commands


def send_command(command: str) -> None:
    """
    Push a manual action to the tracker.

    Raises:
        ValueError: for an unknown command
        OSError: when the tracker is not running
    """
    if command not in COMMANDS:
        raise ValueError(f"Unknown command: {command}")

    CommandManager.register("get_commands")
    manager = _manager()
    manager.connect()
    manager.get_commands().put({"command": command})
    logger.info("Sent %s to tracker", command)


def drain_commands(queue: Queue) -> list[str]:
    """Pop every pending command without blocking."""
    commands: list[str] = []
    while True:
        try:
            item: Any = queue.get_nowait()
        except Empty:
            return commands
        command = item.get("command") if isinstance(item, dict) else None
        if command in COMMANDS:
            commands.append(command)
        else:
            logger.warning("Ignoring malformed command: %r", item)
