# src/systemd_exporter/modules/control_group.py
# -*- coding: utf-8 -*-
"""Resolves which cgroup to read for a unit, given what systemd reports."""

import logging
from typing import Any

from ..datatypes import (
    AbsenceReason,
    BusType,
    CgroupResolution,
    UnitDescriptor,
    UnitType,
)
from ..errors import ControlGroupError, ExporterError

log = logging.getLogger(__name__)

UNKNOWN = "unknown"
CLEANED_UP_STATES = ("inactive", "failed")


def get_string_property_or_default(
    bus: Any, unit: UnitDescriptor, interface_name: str, property_name: str,
    default: str = UNKNOWN,
) -> str:
    """Best-effort string property read; returns default instead of raising."""
    try:
        value = bus.get_unit_type_property(unit.name, interface_name, property_name)
        return value.expect(BusType.STRING, property_name)
    except ExporterError as e:
        log.debug(f"{unit.name}: {e}")
        return default


def get_control_group(bus: Any, unit: UnitDescriptor) -> CgroupResolution:
    """
    Reads <Type>.ControlGroup and applies the state-aware decision table.

    Raises:
        PropertyError / PropertyTypeError: the property could not be read.
        ControlGroupError: an active unit reported no cgroup.
    """
    interface_name = unit.interface_name
    value = bus.get_unit_type_property(unit.name, interface_name, "ControlGroup")
    cgroup_path = value.expect(BusType.STRING, "ControlGroup")

    if cgroup_path:
        return CgroupResolution.present(cgroup_path)

    if unit.active_state in CLEANED_UP_STATES:
        # systemd has cleaned up, nothing to record
        return CgroupResolution.absent(AbsenceReason.CLEANED_UP)

    sub_type = get_string_property_or_default(bus, unit, interface_name, "Type")
    slice_name = get_string_property_or_default(bus, unit, interface_name, "Slice")
    if unit.active_state == "active":
        raise ControlGroupError(
            f"got 'no cgroup' from systemd for active unit "
            f"(state={unit.active_state} subtype={sub_type} slice={slice_name})"
        )

    log.debug(
        f"Read 'no cgroup' from unit (name={unit.name} state={unit.active_state} "
        f"subtype={sub_type} slice={slice_name})"
    )
    return CgroupResolution.absent(AbsenceReason.TRANSITIONING)


def _remains_after_exit(bus: Any, unit: UnitDescriptor) -> bool:
    try:
        value = bus.get_unit_type_property(unit.name, "Service", "RemainAfterExit")
        return value.expect(BusType.BOOLEAN, "RemainAfterExit") is True
    except ExporterError as e:
        log.debug(f"{unit.name}: {e}")
        return False


def resolve_control_group(bus: Any, unit: UnitDescriptor) -> CgroupResolution:
    """
    Like get_control_group, but turns expected failures into absences.

    Not every mount is resource controlled, and RemainAfterExit services stay
    'active' with no process or cgroup left. Any other failure propagates.
    """
    try:
        return get_control_group(bus, unit)
    except ExporterError as e:
        if unit.unit_type is UnitType.MOUNT:
            log.debug(f"{unit.name}: no controllable cgroup ({e})")
            return CgroupResolution.absent(AbsenceReason.NOT_CONTROLLED)
        if unit.unit_type is UnitType.SERVICE and _remains_after_exit(bus, unit):
            log.debug(f"{unit.name}: RemainAfterExit service without cgroup")
            return CgroupResolution.absent(AbsenceReason.REMAIN_AFTER_EXIT)
        raise
