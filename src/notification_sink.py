"""
Desktop notifications for reminders via org.freedesktop.Notifications.

Uses the session D-Bus so it works with any freedesktop-compliant
notification daemon. Delivery is best effort: a missing session bus or
daemon is logged and the reminder is dropped.
"""

from __future__ import annotations

import logging
import os
from typing import Callable

import dbus
import dbus.exceptions

from bluetooth_scanner import ensure_dbus_mainloop
from reminders import Reminder, render_notification

logger = logging.getLogger(__name__)

NOTIFICATIONS_SERVICE = "org.freedesktop.Notifications"
NOTIFICATIONS_PATH = "/org/freedesktop/Notifications"
NOTIFICATIONS_INTERFACE = "org.freedesktop.Notifications"

APP_NAME = "Library Presence"

NOTIFICATIONS_ENABLED = os.getenv("NOTIFICATIONS_ENABLED", "true").lower() in (
    "1",
    "true",
    "yes",
)

# Expire timeout in ms; 0 keeps the rules prompt until the user answers
DEFAULT_EXPIRE_MS = -1
RULES_EXPIRE_MS = 0

HIDE_RULES_ACTION = "hide_rules"

LIBRARY_RULES = (
    "• No food allowed",
    "• Please keep quiet",
    "• Put your phone on silent",
)


class DesktopNotificationSink:
    """Reminder sink that posts notifications to the desktop session."""

    def __init__(self, enabled: bool = NOTIFICATIONS_ENABLED) -> None:
        self.enabled = enabled
        self._bus: dbus.SessionBus | None = None
        self._interface: dbus.Interface | None = None
        self._pending_actions: dict[int, Callable[[], None]] = {}
        self._signals_connected = False

    def _get_interface(self) -> dbus.Interface:
        if self._interface is None:
            ensure_dbus_mainloop()
            self._bus = dbus.SessionBus()
            self._interface = dbus.Interface(
                self._bus.get_object(NOTIFICATIONS_SERVICE, NOTIFICATIONS_PATH),
                NOTIFICATIONS_INTERFACE,
            )
        return self._interface

    def _notify(
        self,
        title: str,
        body: str,
        actions: list[str] | None = None,
        expire_ms: int = DEFAULT_EXPIRE_MS,
    ) -> int | None:
        if not self.enabled:
            logger.info("[notification disabled] %s: %s", title, body)
            return None
        try:
            interface = self._get_interface()
            notification_id = interface.Notify(
                APP_NAME,
                dbus.UInt32(0),
                "",
                title,
                body,
                dbus.Array(actions or [], signature="s"),
                dbus.Dictionary({}, signature="sv"),
                dbus.Int32(expire_ms),
            )
            return int(notification_id)
        except dbus.exceptions.DBusException as e:
            logger.error(f"Desktop notification failed ({title}): {e}")
            # Force a reconnect on the next attempt
            self._interface = None
            self._signals_connected = False
            self._pending_actions.clear()
            return None

    def deliver(self, reminder: Reminder) -> None:
        title, body = render_notification(reminder)
        self._notify(title, body)

    def show_rules(self, on_suppress: Callable[[], None]) -> None:
        """Post the library rules with a "Don't show again" action."""
        notification_id = self._notify(
            "Library Rules",
            "\n".join(LIBRARY_RULES),
            actions=[HIDE_RULES_ACTION, "Don't show again", "default", "OK"],
            expire_ms=RULES_EXPIRE_MS,
        )
        if notification_id is None:
            return
        self._pending_actions[notification_id] = on_suppress
        self._connect_signals()

    def _connect_signals(self) -> None:
        if self._signals_connected or self._bus is None:
            return
        self._bus.add_signal_receiver(
            self._on_action_invoked,
            signal_name="ActionInvoked",
            dbus_interface=NOTIFICATIONS_INTERFACE,
            path=NOTIFICATIONS_PATH,
        )
        self._bus.add_signal_receiver(
            self._on_notification_closed,
            signal_name="NotificationClosed",
            dbus_interface=NOTIFICATIONS_INTERFACE,
            path=NOTIFICATIONS_PATH,
        )
        self._signals_connected = True

    def _on_action_invoked(self, notification_id, action_key) -> None:
        callback = self._pending_actions.pop(int(notification_id), None)
        if callback is None:
            return
        if str(action_key) == HIDE_RULES_ACTION:
            logger.info("Library rules dismissed with \"Don't show again\"")
            callback()

    def _on_notification_closed(self, notification_id, _reason) -> None:
        self._pending_actions.pop(int(notification_id), None)

