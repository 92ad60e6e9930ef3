# src/systemd_exporter/modules/collectors.py
# -*- coding: utf-8 -*-

import logging
from typing import Any, Callable

from .. import metrics
from ..config import CollectorConfig
from ..datatypes import BusType, UINT64_SENTINEL, UnitDescriptor, UnitType
from ..errors import ExporterError, PropertyError, StatFileUnavailableError
from ..metrics import SampleSink
from .cgroup import CgroupFS, read_cpu_accounting, read_memory_accounting
from .control_group import resolve_control_group
from .processes import read_process_stats

log = logging.getLogger(__name__)

UNIT_STATES = ("active", "activating", "deactivating", "inactive", "failed")
CGROUP_UNIT_TYPES = (
    UnitType.SERVICE,
    UnitType.MOUNT,
    UnitType.SOCKET,
    UnitType.SWAP,
    UnitType.SLICE,
)
USEC_PER_SECOND = 1_000_000.0


# --- Unit State ---
def collect_unit_state(bus: Any, unit: UnitDescriptor, sink: SampleSink) -> None:
    """One gauge per known state, 1.0 for the unit's current active state."""
    for state_name in UNIT_STATES:
        value = 1.0 if state_name == unit.active_state else 0.0
        sink.emit(metrics.UNIT_STATE, value, unit.name, unit.type_name, state_name)


# --- Static Info ---
def collect_service_info(bus: Any, unit: UnitDescriptor, sink: SampleSink) -> None:
    service_type = bus.get_unit_type_property(unit.name, "Service", "Type").expect(
        BusType.STRING, "Type"
    )
    sink.emit(metrics.UNIT_INFO, 1.0, unit.name, unit.type_name, "", service_type)


def collect_mount_info(bus: Any, unit: UnitDescriptor, sink: SampleSink) -> None:
    mount_type = bus.get_unit_type_property(unit.name, "Mount", "Type").expect(
        BusType.STRING, "Type"
    )
    sink.emit(metrics.UNIT_INFO, 1.0, unit.name, unit.type_name, mount_type, "")


# --- Service ---
def collect_start_time(bus: Any, unit: UnitDescriptor, sink: SampleSink) -> None:
    start_time_usec = 0
    if unit.active_state == "active":
        start_time_usec = bus.get_unit_property(unit.name, "ActiveEnterTimestamp").expect(
            BusType.UINT64, "ActiveEnterTimestamp"
        )
    sink.emit(
        metrics.UNIT_START_TIME,
        start_time_usec / USEC_PER_SECOND,
        unit.name,
        unit.type_name,
    )


def collect_restart_count(bus: Any, unit: UnitDescriptor, sink: SampleSink) -> None:
    """Needs systemd 235 or newer."""
    restarts = bus.get_unit_type_property(unit.name, "Service", "NRestarts").expect(
        BusType.UINT32, "NRestarts"
    )
    sink.emit(metrics.SERVICE_RESTART_TOTAL, restarts, unit.name)


def collect_tasks(bus: Any, unit: UnitDescriptor, sink: SampleSink) -> None:
    """TasksCurrent / TasksMax; the uint64 'unset' sentinel is never emitted."""
    current = bus.get_unit_type_property(unit.name, "Service", "TasksCurrent").expect(
        BusType.UINT64, "TasksCurrent"
    )
    if current != UINT64_SENTINEL:
        sink.emit(metrics.UNIT_TASKS_CURRENT, current, unit.name)

    maximum = bus.get_unit_type_property(unit.name, "Service", "TasksMax").expect(
        BusType.UINT64, "TasksMax"
    )
    if maximum != UINT64_SENTINEL:
        sink.emit(metrics.UNIT_TASKS_MAX, maximum, unit.name, unit.type_name)


def collect_process(
    bus: Any, unit: UnitDescriptor, sink: SampleSink, include_fd_count: bool = False
) -> None:
    main_pid = bus.get_unit_type_property(unit.name, "Service", "MainPID").expect(
        BusType.UINT32, "MainPID"
    )
    # MainPID is 0 when the service currently has no main process
    if main_pid == 0:
        return

    stats = read_process_stats(main_pid, include_fd_count=include_fd_count)
    sink.emit(metrics.PROCESS_CPU_SECONDS, stats.cpu_seconds, unit.name)
    sink.emit(metrics.PROCESS_VIRTUAL_MEMORY, stats.virtual_memory_bytes, unit.name)
    sink.emit(metrics.PROCESS_RESIDENT_MEMORY, stats.resident_memory_bytes, unit.name)
    if stats.max_fds is not None:
        sink.emit(metrics.PROCESS_MAX_FDS, stats.max_fds, unit.name)
    if stats.max_address_space_bytes is not None:
        sink.emit(metrics.PROCESS_VIRTUAL_MEMORY_MAX, stats.max_address_space_bytes, unit.name)
    if stats.open_fds is not None:
        sink.emit(metrics.PROCESS_OPEN_FDS, stats.open_fds, unit.name)


# --- Timer ---
def collect_timer_trigger(bus: Any, unit: UnitDescriptor, sink: SampleSink) -> None:
    last_trigger = bus.get_unit_type_property(unit.name, "Timer", "LastTriggerUSec").expect(
        BusType.UINT64, "LastTriggerUSec"
    )
    if last_trigger == UINT64_SENTINEL:
        log.debug(f"{unit.name}: LastTriggerUSec unset")
        return
    sink.emit(metrics.TIMER_LAST_TRIGGER, last_trigger / USEC_PER_SECOND, unit.name)


# --- Socket ---
SOCKET_COUNTERS = (
    ("NAccepted", metrics.SOCKET_ACCEPTED_CONNECTIONS),
    ("NConnections", metrics.SOCKET_CURRENT_CONNECTIONS),
    ("NRefused", metrics.SOCKET_REFUSED_CONNECTIONS),
)


def collect_socket_connections(bus: Any, unit: UnitDescriptor, sink: SampleSink) -> None:
    """Each counter is read on its own; NRefused only exists since systemd 239."""
    for property_name, desc in SOCKET_COUNTERS:
        try:
            value = bus.get_unit_type_property(unit.name, "Socket", property_name).expect(
                BusType.UINT32, property_name
            )
        except PropertyError as e:
            if property_name == "NRefused":
                log.debug(f"{unit.name}: {e}")
            else:
                log.warning(f"{unit.name}: couldn't get unit's metrics: {e}")
            continue
        except ExporterError as e:
            log.warning(f"{unit.name}: couldn't get unit's metrics: {e}")
            continue
        sink.emit(desc, value, unit.name)


# --- Cgroup Accounting ---
def collect_cgroup_cpu(
    cgroup_fs: CgroupFS, cgroup_path: str, unit: UnitDescriptor, sink: SampleSink
) -> None:
    try:
        cpu = read_cpu_accounting(cgroup_fs, cgroup_path)
    except StatFileUnavailableError as e:
        log.debug(f"{unit.name}: no cpu accounting ({e})")
        return
    sink.emit(
        metrics.UNIT_CPU_SECONDS, cpu.user_usec / USEC_PER_SECOND,
        unit.name, unit.type_name, "user",
    )
    sink.emit(
        metrics.UNIT_CPU_SECONDS, cpu.system_usec / USEC_PER_SECOND,
        unit.name, unit.type_name, "system",
    )


def collect_cgroup_memory(
    cgroup_fs: CgroupFS, cgroup_path: str, unit: UnitDescriptor, sink: SampleSink
) -> None:
    # Reading memory.stat directly works even when systemd reports
    # MemoryAccounting=no but the kernel has the controller enabled.
    try:
        mem = read_memory_accounting(cgroup_fs, cgroup_path)
    except StatFileUnavailableError as e:
        log.debug(f"{unit.name}: no memory accounting ({e})")
        return
    labels = (unit.name, unit.type_name)
    sink.emit(metrics.UNIT_FILE_CACHE_BYTES, mem.file_bytes, *labels)
    sink.emit(metrics.UNIT_ANON_BYTES, mem.anon_bytes, *labels)
    sink.emit(metrics.UNIT_KERNEL_STACK_BYTES, mem.kernel_stack_bytes, *labels)
    sink.emit(metrics.UNIT_FILE_CACHE_DIRTY_BYTES, mem.file_dirty_bytes, *labels)
    sink.emit(metrics.UNIT_FILE_MAPPED_BYTES, mem.file_mapped_bytes, *labels)


# --- Dispatch ---
def _run(what: str, unit: UnitDescriptor, func: Callable[[], None], quiet: bool = False) -> None:
    """Runs one collector, logging its failure without affecting the others."""
    try:
        func()
    except ExporterError as e:
        if quiet:
            log.debug(f"{unit.name}: couldn't get {what} metrics: {e}")
        else:
            log.warning(f"{unit.name}: couldn't get {what} metrics: {e}")
    except Exception as e:
        log.error(f"{unit.name}: unexpected error collecting {what} metrics: {e}", exc_info=True)


def _collect_cgroup_metrics(
    bus: Any, unit: UnitDescriptor, sink: SampleSink, cgroup_fs: CgroupFS
) -> None:
    resolution = resolve_control_group(bus, unit)
    if not resolution.is_present:
        log.debug(f"{unit.name}: no cgroup to read ({resolution.reason.value})")
        return
    # Most sockets have no cpu controller entry (docker.socket is an exception)
    _run(
        "cgroup cpu", unit,
        lambda: collect_cgroup_cpu(cgroup_fs, resolution.path, unit, sink),
        quiet=unit.unit_type is UnitType.SOCKET,
    )
    _run(
        "cgroup memory", unit,
        lambda: collect_cgroup_memory(cgroup_fs, resolution.path, unit, sink),
    )


def collect_unit(
    bus: Any,
    unit: UnitDescriptor,
    sink: SampleSink,
    config: CollectorConfig,
    cgroup_fs: CgroupFS,
) -> None:
    """Runs every collector that applies to the unit's type."""
    _run("state", unit, lambda: collect_unit_state(bus, unit, sink))

    unit_type = unit.unit_type
    if unit_type in CGROUP_UNIT_TYPES:
        _run("cgroup", unit, lambda: _collect_cgroup_metrics(bus, unit, sink, cgroup_fs))

    if unit_type is UnitType.SERVICE:
        _run("info", unit, lambda: collect_service_info(bus, unit, sink))
        _run("start time", unit, lambda: collect_start_time(bus, unit, sink))
        if config.enable_restart_count:
            _run("restart count", unit, lambda: collect_restart_count(bus, unit, sink))
        _run("tasks", unit, lambda: collect_tasks(bus, unit, sink))
        _run(
            "process", unit,
            lambda: collect_process(bus, unit, sink, include_fd_count=config.enable_fd_count),
        )
    elif unit_type is UnitType.MOUNT:
        _run("info", unit, lambda: collect_mount_info(bus, unit, sink))
    elif unit_type is UnitType.TIMER:
        _run("timer", unit, lambda: collect_timer_trigger(bus, unit, sink))
    elif unit_type is UnitType.SOCKET:
        _run("socket", unit, lambda: collect_socket_connections(bus, unit, sink))
    elif unit_type in (UnitType.SWAP, UnitType.SLICE):
        # Only cgroup accounting applies, and it was collected above.
        pass
    else:
        log.debug(f"no unit type handler for {unit.name}")
