# tests/conftest.py
# -*- coding: utf-8 -*-

import pytest
from typing import Any, Dict, List, Optional, Tuple

from systemd_exporter.config import CollectorConfig
from systemd_exporter.datatypes import BusType, BusValue, UnitDescriptor
from systemd_exporter.errors import PropertyError


class FakeBus:
    """In-memory stand-in for SystemdBus.

    Properties are keyed by (unit, interface, property). A value that is an
    Exception instance is raised instead of returned.
    """

    def __init__(
        self,
        units: Optional[List[UnitDescriptor]] = None,
        properties: Optional[Dict[Tuple[str, str, str], Any]] = None,
    ):
        self.units = units or []
        self.properties = properties or {}
        self.calls: List[Tuple[str, str, str]] = []
        self.closed = False

    def list_units(self) -> List[UnitDescriptor]:
        return list(self.units)

    def get_unit_property(self, unit_name: str, property_name: str) -> BusValue:
        return self.get_unit_type_property(unit_name, "Unit", property_name)

    def get_unit_type_property(
        self, unit_name: str, interface_name: str, property_name: str
    ) -> BusValue:
        key = (unit_name, interface_name, property_name)
        self.calls.append(key)
        if key not in self.properties:
            raise PropertyError(unit_name, property_name, "Unknown property")
        value = self.properties[key]
        if isinstance(value, Exception):
            raise value
        return value

    def close(self) -> None:
        self.closed = True


def string(value: str) -> BusValue:
    return BusValue(BusType.STRING, value)


def uint32(value: int) -> BusValue:
    return BusValue(BusType.UINT32, value)


def uint64(value: int) -> BusValue:
    return BusValue(BusType.UINT64, value)


def boolean(value: bool) -> BusValue:
    return BusValue(BusType.BOOLEAN, value)


def make_unit(name: str, active_state: str = "active", load_state: str = "loaded") -> UnitDescriptor:
    return UnitDescriptor(
        name=name,
        load_state=load_state,
        active_state=active_state,
        sub_state="running" if active_state == "active" else "dead",
        description=f"Test unit {name}",
        path=f"/org/freedesktop/systemd1/unit/{name}",
    )


def write_unit_cgroup(root, subpath: str, cpu_stat: Optional[str], memory_stat: Optional[str]):
    """Creates <root>/<subpath>/{cpu.stat,memory.stat} for a unified hierarchy."""
    unit_dir = root / subpath.lstrip("/")
    unit_dir.mkdir(parents=True, exist_ok=True)
    if cpu_stat is not None:
        (unit_dir / "cpu.stat").write_text(cpu_stat)
    if memory_stat is not None:
        (unit_dir / "memory.stat").write_text(memory_stat)
    return unit_dir


# --- Fixtures ---

@pytest.fixture
def fake_bus():
    return FakeBus()


@pytest.fixture
def default_collector_config():
    return CollectorConfig.from_mapping({})


@pytest.fixture
def cgroup_root(tmp_path):
    """A fake unified cgroup mountpoint."""
    root = tmp_path / "cgroup"
    root.mkdir()
    (root / "cgroup.controllers").write_text("cpu io memory pids\n")
    return root
