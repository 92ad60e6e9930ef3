# src/systemd_exporter/errors.py
# -*- coding: utf-8 -*-
"""Exception hierarchy shared by the collection engine."""

from typing import Any, Optional


class ExporterError(Exception):
    """Base class for every recoverable collection error."""


# --- Bus errors ---
class BusError(ExporterError):
    """Any failure talking to systemd over D-Bus."""


class BusConnectionError(BusError):
    """The bus (or the private systemd socket) could not be reached."""


class UnitEnumerationError(BusError):
    """ListUnits failed or returned something unusable."""


class PropertyError(BusError):
    """A single property read failed."""

    def __init__(self, unit_name: str, property_name: str, reason: Any = None):
        self.unit_name = unit_name
        self.property_name = property_name
        message = f"couldn't get unit's {property_name} property"
        if reason is not None:
            message = f"{message}: {reason}"
        super().__init__(message)


class PropertyTypeError(ExporterError):
    """A property came back with a different D-Bus type than expected."""

    def __init__(self, property_name: str, expected: str, actual: str, value: Any):
        self.property_name = property_name
        self.expected = expected
        self.actual = actual
        self.value = value
        super().__init__(
            f"couldn't convert unit's {property_name} property {value!r} "
            f"({actual}) to {expected}"
        )


# --- Cgroup errors ---
class ControlGroupError(ExporterError):
    """systemd reported no cgroup for a unit that should have one."""


class StatFileError(ExporterError):
    """Base class for cgroup accounting file problems."""

    def __init__(self, message: str, source: Optional[str] = None):
        self.source = source
        super().__init__(message)


class StatFileUnavailableError(StatFileError):
    """The accounting file could not be opened (missing controller, permissions)."""


class IncompleteDataError(StatFileError):
    """The file parsed but lacked required keys."""


class MalformedLineError(StatFileError):
    """A line in the file did not have the expected shape."""


# --- Process errors ---
class ProcessGoneError(ExporterError):
    """The unit's main process exited between the bus read and the proc read."""
