# src/systemd_exporter/bus.py
# -*- coding: utf-8 -*-

import logging
from typing import Any, List, Optional

try:
    import dbus
    import dbus.connection
    import dbus.exceptions  # Import exceptions submodule

    HAS_DBUS = True
except ImportError:
    HAS_DBUS = False
    dbus = None  # Placeholder

from .datatypes import BusType, BusValue, UnitDescriptor
from .errors import BusConnectionError, PropertyError, UnitEnumerationError

log = logging.getLogger(__name__)
log_dbus = logging.getLogger(__name__ + ".dbus")

# --- Constants ---
SYSTEMD_BUS_NAME = "org.freedesktop.systemd1"
SYSTEMD_OBJECT_PATH = "/org/freedesktop/systemd1"
SYSTEMD_UNIT_PATH_PREFIX = "/org/freedesktop/systemd1/unit/"
SYSTEMD_INTERFACE_PREFIX = "org.freedesktop.systemd1."
MANAGER_INTERFACE = SYSTEMD_INTERFACE_PREFIX + "Manager"
PROPERTIES_INTERFACE = "org.freedesktop.DBus.Properties"
# systemd listens here for direct connections that bypass dbus-daemon.
SYSTEMD_PRIVATE_ADDRESS = "unix:path=/run/systemd/private"


def escape_bus_path(name: str) -> str:
    """Escapes a unit name into an object path element the way systemd does.

    Alphanumerics are kept, every other byte becomes '_xx' (lowercase hex).
    A leading digit is escaped too, since path elements may not start with one.
    'foo.service' -> 'foo_2eservice'.
    """
    if not name:
        return "_"
    escaped = []
    for i, byte in enumerate(name.encode("utf-8")):
        char = chr(byte)
        if char.isascii() and char.isalnum() and not (i == 0 and char.isdigit()):
            escaped.append(char)
        else:
            escaped.append(f"_{byte:02x}")
    return "".join(escaped)


def unit_object_path(unit_name: str) -> str:
    return SYSTEMD_UNIT_PATH_PREFIX + escape_bus_path(unit_name)


def _dbus_to_python(val: Any) -> Any:
    """Converts common DBus types to Python types for logging/use."""
    if HAS_DBUS and dbus:
        if isinstance(val, (dbus.String, dbus.ObjectPath)):
            return str(val)
        if isinstance(val, dbus.Boolean):
            return bool(val)
        if isinstance(val, (dbus.Int32, dbus.UInt32, dbus.Int64, dbus.UInt64, dbus.Byte)):
            return int(val)
        if isinstance(val, dbus.Double):
            return float(val)
        if isinstance(val, (dbus.Array, list)):
            return [_dbus_to_python(x) for x in val]
        if isinstance(val, (dbus.Dictionary, dict)):
            return {str(k): _dbus_to_python(v) for k, v in val.items()}
    return val


def to_bus_value(val: Any) -> BusValue:
    """Tags a raw dbus-python value with its wire type.

    Boolean is checked before the integer types because dbus.Boolean is an
    int subclass.
    """
    if HAS_DBUS and dbus:
        if isinstance(val, dbus.Boolean):
            return BusValue(BusType.BOOLEAN, bool(val))
        if isinstance(val, dbus.String):
            return BusValue(BusType.STRING, str(val))
        if isinstance(val, dbus.UInt32):
            return BusValue(BusType.UINT32, int(val))
        if isinstance(val, dbus.UInt64):
            return BusValue(BusType.UINT64, int(val))
    return BusValue(BusType.OTHER, _dbus_to_python(val))


class SystemdBus:
    """Thin, read-only client for systemd's D-Bus API.

    One instance is opened per collection cycle and shared by all unit tasks;
    it only issues blocking property reads. Use as a context manager so the
    connection is closed when the cycle ends.
    """

    def __init__(self, connection: Any, private: bool = False):
        self._connection = connection
        self.private = private
        # Peer-to-peer connections to systemd have no bus names.
        self._bus_name: Optional[str] = None if private else SYSTEMD_BUS_NAME
        manager_object = connection.get_object(
            self._bus_name, SYSTEMD_OBJECT_PATH, introspect=False
        )
        self._manager = dbus.Interface(manager_object, MANAGER_INTERFACE)

    @classmethod
    def connect(cls, private: bool = False) -> "SystemdBus":
        """Opens a dedicated connection to the system bus or to systemd directly."""
        if not HAS_DBUS or dbus is None:
            raise BusConnectionError("dbus-python bindings are not installed")
        try:
            if private:
                log.debug(f"Opening private systemd connection at {SYSTEMD_PRIVATE_ADDRESS}")
                connection = dbus.connection.Connection(SYSTEMD_PRIVATE_ADDRESS)
            else:
                # private=True gives us our own connection we can close safely.
                connection = dbus.SystemBus(private=True)
            bus = cls(connection, private=private)
        except dbus.exceptions.DBusException as e:
            raise BusConnectionError(f"couldn't get dbus connection: {e}") from e
        log.debug("Connected to systemd manager via DBus.")
        return bus

    def close(self) -> None:
        if self._connection is None:
            return
        try:
            self._connection.close()
        except Exception as e:
            log.debug(f"Error while closing DBus connection: {e}")
        finally:
            self._connection = None

    def __enter__(self) -> "SystemdBus":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # --- Manager calls ---
    def list_units(self) -> List[UnitDescriptor]:
        """Returns every unit systemd currently has loaded in memory."""
        try:
            raw_units = self._manager.ListUnits()
        except dbus.exceptions.DBusException as e:
            raise UnitEnumerationError(
                f"could not get list of systemd units from dbus: {e}"
            ) from e
        log.debug(f"DBus ListUnits returned {len(raw_units)} units.")
        units: List[UnitDescriptor] = []
        for u in raw_units:
            if isinstance(u, (list, tuple)) and len(u) >= 7:
                units.append(
                    UnitDescriptor(
                        name=str(u[0]),
                        description=str(u[1]),
                        load_state=str(u[2]),
                        active_state=str(u[3]),
                        sub_state=str(u[4]),
                        path=str(u[6]),
                    )
                )
            else:
                log.warning(f"Skipping DBus unit entry with unexpected structure: {u!r}")
        return units

    # --- Property reads ---
    def get_unit_property(self, unit_name: str, property_name: str) -> BusValue:
        """Reads a property of the generic org.freedesktop.systemd1.Unit interface."""
        return self.get_unit_type_property(unit_name, "Unit", property_name)

    def get_unit_type_property(
        self, unit_name: str, interface_name: str, property_name: str
    ) -> BusValue:
        """Reads a property of a type-specific interface, e.g. ('Service', 'MainPID')."""
        interface = SYSTEMD_INTERFACE_PREFIX + interface_name
        log_dbus.debug(f"Get {interface}.{property_name} for {unit_name}")
        connection = self._connection
        if connection is None:
            # Closed by a finished or timed-out cycle.
            raise PropertyError(unit_name, property_name, "connection closed")
        try:
            unit_object = connection.get_object(
                self._bus_name, unit_object_path(unit_name), introspect=False
            )
            properties = dbus.Interface(unit_object, PROPERTIES_INTERFACE)
            raw_value = properties.Get(interface, property_name)
        except dbus.exceptions.DBusException as e:
            raise PropertyError(unit_name, property_name, e) from e
        return to_bus_value(raw_value)
