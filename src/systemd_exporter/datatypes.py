# src/systemd_exporter/datatypes.py
# -*- coding: utf-8 -*-

import enum
from dataclasses import dataclass, field
from typing import Any, Optional

from .errors import PropertyTypeError

# systemd reports "unset/infinity" for 64-bit properties as the max uint64.
UINT64_SENTINEL = 2**64 - 1
UINT32_MAX = 2**32 - 1


# --- Unit Data Structures ---


class UnitType(enum.Enum):
    """Closed set of unit types the collectors dispatch on."""

    SERVICE = "service"
    SOCKET = "socket"
    MOUNT = "mount"
    SWAP = "swap"
    SLICE = "slice"
    TIMER = "timer"
    TARGET = "target"
    OTHER = "other"

    @classmethod
    def from_suffix(cls, suffix: str) -> "UnitType":
        try:
            return cls(suffix)
        except ValueError:
            return cls.OTHER


def unit_type_name(unit_name: str) -> str:
    """Returns the suffix after the last dot ('foo.service' -> 'service')."""
    return unit_name.rsplit(".", 1)[-1]


@dataclass(frozen=True)
class UnitDescriptor:
    """Snapshot of one unit as returned by ListUnits for a single cycle."""

    name: str
    load_state: str = ""
    active_state: str = ""
    sub_state: str = ""
    description: str = ""
    path: str = ""
    type_name: str = field(init=False)
    unit_type: UnitType = field(init=False)

    def __post_init__(self):
        suffix = unit_type_name(self.name)
        object.__setattr__(self, "type_name", suffix)
        object.__setattr__(self, "unit_type", UnitType.from_suffix(suffix))

    @property
    def interface_name(self) -> str:
        """Bus interface holding the type-specific properties, e.g. 'Service'."""
        return self.type_name.capitalize()


# --- Cgroup Data Structures ---


class AbsenceReason(enum.Enum):
    """Why a unit has no cgroup to read this cycle."""

    CLEANED_UP = "cleaned_up"
    TRANSITIONING = "transitioning"
    NOT_CONTROLLED = "not_controlled"
    REMAIN_AFTER_EXIT = "remain_after_exit"


@dataclass(frozen=True)
class CgroupResolution:
    """Outcome of a cgroup lookup: a non-empty path, or an absence reason."""

    path: Optional[str] = None
    reason: Optional[AbsenceReason] = None

    def __post_init__(self):
        if self.path is not None and self.path == "":
            raise ValueError("cgroup path may not be empty; use an absence reason")
        if (self.path is None) == (self.reason is None):
            raise ValueError("exactly one of path or reason must be set")

    @classmethod
    def present(cls, path: str) -> "CgroupResolution":
        return cls(path=path)

    @classmethod
    def absent(cls, reason: AbsenceReason) -> "CgroupResolution":
        return cls(reason=reason)

    @property
    def is_present(self) -> bool:
        return self.path is not None


@dataclass(frozen=True)
class CPUAccounting:
    """CPU time of a cgroup, in microseconds (from cpu.stat)."""

    total_usec: int
    user_usec: int
    system_usec: int


@dataclass(frozen=True)
class MemoryAccounting:
    """Counters from a cgroup v2 memory.stat file.

    Byte-valued fields carry a ``_bytes`` suffix; the remaining ones are
    event or page counts. Keys missing from the file stay at zero.
    """

    anon_bytes: int = 0
    file_bytes: int = 0
    kernel_stack_bytes: int = 0
    page_tables_bytes: int = 0
    per_cpu_bytes: int = 0
    sock_bytes: int = 0
    shmem_bytes: int = 0
    file_mapped_bytes: int = 0
    file_dirty_bytes: int = 0
    file_writeback_bytes: int = 0
    swapcached_bytes: int = 0
    anon_thp_bytes: int = 0
    file_thp_bytes: int = 0
    shmem_thp_bytes: int = 0
    inactive_anon_bytes: int = 0
    active_anon_bytes: int = 0
    inactive_file_bytes: int = 0
    active_file_bytes: int = 0
    unevictable_bytes: int = 0
    slab_reclaimable_bytes: int = 0
    slab_unreclaimable_bytes: int = 0
    slab_bytes: int = 0
    workingset_refault_anon: int = 0
    workingset_refault_file: int = 0
    workingset_activate_anon: int = 0
    workingset_activate_file: int = 0
    workingset_restore_anon: int = 0
    workingset_restore_file: int = 0
    workingset_nodereclaim: int = 0
    pgfault: int = 0
    pgmajfault: int = 0
    pgrefill: int = 0
    pgscan: int = 0
    pgsteal: int = 0
    pgactivate: int = 0
    pgdeactivate: int = 0
    pglazyfree: int = 0
    pglazyfreed: int = 0
    thp_fault_alloc: int = 0
    thp_collapse_alloc: int = 0


# --- Bus Value Data Structures ---


class BusType(enum.Enum):
    """D-Bus primitive types the collectors care about."""

    STRING = "string"
    UINT32 = "uint32"
    UINT64 = "uint64"
    BOOLEAN = "boolean"
    OTHER = "other"


@dataclass(frozen=True)
class BusValue:
    """A property value tagged with the D-Bus type it arrived as."""

    type: BusType
    value: Any

    def expect(self, expected: BusType, property_name: str) -> Any:
        """Returns the plain value if the tag matches, else raises PropertyTypeError."""
        if self.type is not expected:
            raise PropertyTypeError(
                property_name, expected.value, self.type.value, self.value
            )
        return self.value


# --- Process Data Structures ---


@dataclass
class ProcessStats:
    """Accounting for a unit's main process, read through psutil."""

    pid: int
    cpu_seconds: float
    virtual_memory_bytes: int
    resident_memory_bytes: int
    max_fds: Optional[int] = None
    max_address_space_bytes: Optional[int] = None
    open_fds: Optional[int] = None
