import time
from typing import Callable, Optional

import dbus
import dbus.exceptions
import dbus.mainloop.glib

from beacon_matcher import ScanObservation, observations_from_manufacturer_data
from logging_utils import get_file_logger

# Configure logger for bluetooth_scanner
logger = get_file_logger(__name__, "bluetooth_scanner.log")

# BlueZ D-Bus constants
BLUEZ_SERVICE = "org.bluez"
OBJECT_MANAGER_INTERFACE = "org.freedesktop.DBus.ObjectManager"
PROPERTIES_INTERFACE = "org.freedesktop.DBus.Properties"
DEVICE_INTERFACE = "org.bluez.Device1"
ADAPTER_INTERFACE = "org.bluez.Adapter1"

# LE only, and report every advertisement rather than only changed ones
DISCOVERY_FILTER = {
    "Transport": "le",
    "DuplicateData": True,
}

# D-Bus error names that mean we are not allowed to scan
PERMISSION_ERRORS = {
    "org.freedesktop.DBus.Error.AccessDenied",
    "org.bluez.Error.NotAuthorized",
    "org.bluez.Error.NotPermitted",
}

# D-Bus error names that mean there is no usable radio
ADAPTER_ERRORS = {
    "org.freedesktop.DBus.Error.ServiceUnknown",
    "org.bluez.Error.NotReady",
    "org.bluez.Error.NotAvailable",
}

ObservationBatchCallback = Callable[[list[ScanObservation], float], None]

_system_bus: dbus.SystemBus | None = None
_dbus_mainloop_initialized = False


class ScanSourceError(Exception):
    """The scan source could not be started."""


class AdapterUnavailableError(ScanSourceError):
    """No adapter, adapter powered off, or bluetoothd not running."""


class PermissionDeniedError(ScanSourceError):
    """The process is not allowed to run discovery."""


def ensure_dbus_mainloop() -> None:
    global _dbus_mainloop_initialized
    if not _dbus_mainloop_initialized:
        dbus.mainloop.glib.DBusGMainLoop(set_as_default=True)
        _dbus_mainloop_initialized = True


def init_dbus() -> None:
    """Initialize the D-Bus main loop and system bus once at startup."""
    ensure_dbus_mainloop()
    _get_system_bus()


def _get_system_bus() -> dbus.SystemBus:
    global _system_bus
    if _system_bus is None:
        ensure_dbus_mainloop()
        _system_bus = dbus.SystemBus()
    return _system_bus


def _dbus_to_native(value):
    if isinstance(value, (dbus.Boolean,)):
        return bool(value)
    if isinstance(value, (dbus.Byte, dbus.Int16, dbus.Int32, dbus.Int64, dbus.UInt16, dbus.UInt32, dbus.UInt64)):
        return int(value)
    if isinstance(value, (dbus.String, dbus.ObjectPath)):
        return str(value)
    if isinstance(value, dbus.ByteArray):
        return bytes(value)
    if isinstance(value, dbus.Array):
        return [_dbus_to_native(item) for item in value]
    if isinstance(value, dbus.Dictionary):
        return {_dbus_to_native(key): _dbus_to_native(val) for key, val in value.items()}
    return value


def _manufacturer_data_to_native(value) -> dict[int, bytes]:
    """Convert a BlueZ ManufacturerData ``a{qv}`` value to ``{company_id: bytes}``."""
    native = _dbus_to_native(value) or {}
    data: dict[int, bytes] = {}
    for company_id, payload in native.items():
        try:
            data[int(company_id)] = bytes(payload)
        except (TypeError, ValueError):
            logger.debug("Skipping malformed manufacturer data for 0x%04X", int(company_id))
    return data


def _classify_dbus_error(exc: dbus.exceptions.DBusException, action: str) -> ScanSourceError:
    name = exc.get_dbus_name() or ""
    if name in PERMISSION_ERRORS:
        return PermissionDeniedError(f"{action} denied: {exc}")
    if name in ADAPTER_ERRORS:
        return AdapterUnavailableError(f"{action} failed, adapter unavailable: {exc}")
    return ScanSourceError(f"{action} failed: {exc}")


def _get_managed_objects() -> dict:
    bus = _get_system_bus()
    manager = dbus.Interface(bus.get_object(BLUEZ_SERVICE, "/"), OBJECT_MANAGER_INTERFACE)
    return manager.GetManagedObjects()


def _get_adapter_path(managed_objects: dict) -> str | None:
    for path, interfaces in managed_objects.items():
        if ADAPTER_INTERFACE in interfaces:
            return str(path)
    return None


def _is_adapter_powered(adapter_path: str) -> bool:
    bus = _get_system_bus()
    props = dbus.Interface(bus.get_object(BLUEZ_SERVICE, adapter_path), PROPERTIES_INTERFACE)
    return bool(_dbus_to_native(props.Get(ADAPTER_INTERFACE, "Powered")))


class BeaconScanner:
    """
    Continuous BLE discovery through BlueZ.

    Every advertisement BlueZ reports for a device (new device, changed
    ManufacturerData, or a fresh RSSI reading) is delivered as one batch of
    ``ScanObservation`` built from that device's manufacturer data.
    Callbacks run on the GLib main loop.
    """

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._on_batch: Optional[ObservationBatchCallback] = None
        self._adapter_path: str | None = None
        self._adapter: dbus.Interface | None = None
        self._signal_matches: list = []
        self._manufacturer_data: dict[str, dict[int, bytes]] = {}
        self._scanning = False

    @property
    def scanning(self) -> bool:
        return self._scanning

    def start(self, on_batch: ObservationBatchCallback) -> None:
        """
        Start discovery and deliver batches to ``on_batch``.

        Raises:
            AdapterUnavailableError: no adapter, powered off, or BlueZ not running
            PermissionDeniedError: discovery not permitted for this process
            ScanSourceError: any other D-Bus failure while starting
        """
        if self._scanning:
            return

        try:
            bus = _get_system_bus()
            managed_objects = _get_managed_objects()
        except dbus.exceptions.DBusException as e:
            raise _classify_dbus_error(e, "Listing BlueZ objects") from e

        adapter_path = _get_adapter_path(managed_objects)
        if not adapter_path:
            raise AdapterUnavailableError("No Bluetooth adapter found")

        try:
            if not _is_adapter_powered(adapter_path):
                raise AdapterUnavailableError(f"Bluetooth adapter {adapter_path} is powered off")
            adapter = dbus.Interface(bus.get_object(BLUEZ_SERVICE, adapter_path), ADAPTER_INTERFACE)
            adapter.SetDiscoveryFilter(dbus.Dictionary(DISCOVERY_FILTER, signature="sv"))
        except dbus.exceptions.DBusException as e:
            raise _classify_dbus_error(e, "Configuring discovery") from e

        self._on_batch = on_batch
        self._adapter_path = adapter_path
        self._adapter = adapter
        self._seed_cache(managed_objects)
        self._connect_signals(bus)

        try:
            adapter.StartDiscovery()
        except dbus.exceptions.DBusException as e:
            if "InProgress" not in str(e):
                self._disconnect_signals()
                raise _classify_dbus_error(e, "StartDiscovery") from e
            logger.debug("Discovery already in progress on %s", adapter_path)

        self._scanning = True
        logger.info("✓ LE discovery started on %s", adapter_path)

    def stop(self) -> None:
        """Stop discovery and unsubscribe. Safe to call more than once."""
        self._disconnect_signals()
        if self._adapter is not None and self._scanning:
            try:
                self._adapter.StopDiscovery()
            except dbus.exceptions.DBusException as e:
                logger.debug(f"StopDiscovery failed: {e}")
        self._scanning = False
        self._on_batch = None
        self._manufacturer_data.clear()
        logger.info("LE discovery stopped")

    def _seed_cache(self, managed_objects: dict) -> None:
        for path, interfaces in managed_objects.items():
            props = interfaces.get(DEVICE_INTERFACE)
            if props and "ManufacturerData" in props:
                self._manufacturer_data[str(path)] = _manufacturer_data_to_native(
                    props["ManufacturerData"]
                )

    def _connect_signals(self, bus: dbus.SystemBus) -> None:
        self._signal_matches = [
            bus.add_signal_receiver(
                self._on_interfaces_added,
                signal_name="InterfacesAdded",
                dbus_interface=OBJECT_MANAGER_INTERFACE,
                bus_name=BLUEZ_SERVICE,
            ),
            bus.add_signal_receiver(
                self._on_interfaces_removed,
                signal_name="InterfacesRemoved",
                dbus_interface=OBJECT_MANAGER_INTERFACE,
                bus_name=BLUEZ_SERVICE,
            ),
            bus.add_signal_receiver(
                self._on_properties_changed,
                signal_name="PropertiesChanged",
                dbus_interface=PROPERTIES_INTERFACE,
                bus_name=BLUEZ_SERVICE,
                path_keyword="path",
            ),
        ]

    def _disconnect_signals(self) -> None:
        for match in self._signal_matches:
            try:
                match.remove()
            except Exception as e:
                logger.debug(f"Failed to remove signal receiver: {e}")
        self._signal_matches = []

    def _on_interfaces_added(self, path, interfaces) -> None:
        props = interfaces.get(DEVICE_INTERFACE)
        if not props or "ManufacturerData" not in props:
            return
        self._manufacturer_data[str(path)] = _manufacturer_data_to_native(props["ManufacturerData"])
        self._deliver(str(path))

    def _on_interfaces_removed(self, path, interfaces) -> None:
        if DEVICE_INTERFACE in interfaces:
            self._manufacturer_data.pop(str(path), None)

    def _on_properties_changed(self, interface, changed, invalidated, path=None) -> None:
        if path is None:
            return
        path = str(path)
        if str(interface) == ADAPTER_INTERFACE:
            if path == self._adapter_path and "Powered" in changed and not bool(changed["Powered"]):
                logger.warning("Bluetooth adapter %s powered off - no further advertisements", path)
            return
        if str(interface) != DEVICE_INTERFACE:
            return
        if "ManufacturerData" in changed:
            self._manufacturer_data[path] = _manufacturer_data_to_native(changed["ManufacturerData"])
        elif "RSSI" not in changed:
            return
        self._deliver(path)

    def _deliver(self, path: str) -> None:
        if self._on_batch is None:
            return
        data = self._manufacturer_data.get(path)
        if not data:
            return
        now = self._clock()
        observations = observations_from_manufacturer_data(data, now)
        try:
            self._on_batch(observations, now)
        except Exception:
            logger.exception("Error handling observations from %s", path)
