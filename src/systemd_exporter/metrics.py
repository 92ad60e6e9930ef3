# src/systemd_exporter/metrics.py
# -*- coding: utf-8 -*-
"""Metric catalogue and the per-cycle sample sink."""

import enum
import logging
import queue
import threading
from dataclasses import dataclass
from typing import List, Tuple

log = logging.getLogger(__name__)

METRICS_NAMESPACE = "systemd"


class MetricKind(enum.Enum):
    GAUGE = "gauge"
    COUNTER = "counter"


@dataclass(frozen=True)
class MetricDesc:
    """Name, help text, label schema and kind of one exported metric."""

    name: str
    help: str
    labels: Tuple[str, ...]
    kind: MetricKind = MetricKind.GAUGE


@dataclass(frozen=True)
class Sample:
    """One measurement. Label values are positional, matching desc.labels."""

    desc: MetricDesc
    labels: Tuple[str, ...]
    value: float

    def __post_init__(self):
        if len(self.labels) != len(self.desc.labels):
            raise ValueError(
                f"{self.desc.name} expects labels {self.desc.labels}, got {self.labels!r}"
            )

    @property
    def label_dict(self):
        return dict(zip(self.desc.labels, self.labels))


def _desc(suffix: str, help_text: str, labels: Tuple[str, ...], kind=MetricKind.GAUGE) -> MetricDesc:
    return MetricDesc(f"{METRICS_NAMESPACE}_{suffix}", help_text, labels, kind)


# --- Metric Definitions ---
# "type" appears both in the name suffix and as a label to stay compatible
# with dashboards built before the type label existed.
UNIT_STATE = _desc("unit_state", "Systemd unit", ("name", "type", "state"))
UNIT_INFO = _desc(
    "unit_info",
    "Mostly-static metadata for all unit types",
    ("name", "type", "mount_type", "service_type"),
)
UNIT_START_TIME = _desc(
    "unit_start_time_seconds",
    "Start time of the unit since unix epoch in seconds.",
    ("name", "type"),
)
UNIT_TASKS_CURRENT = _desc(
    "unit_tasks_current", "Current number of tasks per Systemd unit", ("name",)
)
UNIT_TASKS_MAX = _desc(
    "unit_tasks_max", "Maximum number of tasks per Systemd unit", ("name", "type")
)
SERVICE_RESTART_TOTAL = _desc(
    "service_restart_total",
    "Service unit count of Restart triggers",
    ("state",),
    MetricKind.COUNTER,
)
TIMER_LAST_TRIGGER = _desc(
    "timer_last_trigger_seconds", "Seconds since epoch of last trigger.", ("name",)
)
SOCKET_ACCEPTED_CONNECTIONS = _desc(
    "socket_accepted_connections_total",
    "Total number of accepted socket connections",
    ("name",),
    MetricKind.COUNTER,
)
SOCKET_CURRENT_CONNECTIONS = _desc(
    "socket_current_connections", "Current number of socket connections", ("name",)
)
SOCKET_REFUSED_CONNECTIONS = _desc(
    "socket_refused_connections_total",
    "Total number of refused socket connections",
    ("name",),
    MetricKind.COUNTER,
)
PROCESS_CPU_SECONDS = _desc(
    "process_cpu_seconds_total",
    "Total user and system CPU time spent in seconds.",
    ("name",),
    MetricKind.COUNTER,
)
UNIT_CPU_SECONDS = _desc(
    "unit_cpu_seconds_total",
    "Unit CPU time in seconds",
    ("name", "type", "mode"),
    MetricKind.COUNTER,
)
UNIT_FILE_CACHE_BYTES = _desc(
    "unit_file_cache_bytes",
    "Unit bytes used to cache filesystem data, including tmpfs and shared memory",
    ("name", "type"),
)
UNIT_ANON_BYTES = _desc(
    "unit_anon_bytes",
    "Unit bytes used in anonymous mappings such as mmap(MAP_ANONYMOUS)",
    ("name", "type"),
)
UNIT_KERNEL_STACK_BYTES = _desc(
    "unit_kernel_stack_bytes", "Unit bytes allocated to kernel stacks", ("name", "type")
)
UNIT_FILE_CACHE_DIRTY_BYTES = _desc(
    "unit_file_cache_dirty_bytes",
    "Unit bytes waiting to get written to disk",
    ("name", "type"),
)
UNIT_FILE_MAPPED_BYTES = _desc(
    "unit_file_mapped_bytes",
    "Unit bytes of cached filesystem data mapped with mmap()",
    ("name", "type"),
)
PROCESS_OPEN_FDS = _desc("process_open_fds", "Number of open file descriptors.", ("name",))
PROCESS_MAX_FDS = _desc(
    "process_max_fds", "Maximum number of open file descriptors.", ("name",)
)
PROCESS_VIRTUAL_MEMORY = _desc(
    "process_virtual_memory_bytes", "Virtual memory size in bytes.", ("name",)
)
PROCESS_VIRTUAL_MEMORY_MAX = _desc(
    "process_virtual_memory_max_bytes",
    "Maximum amount of virtual memory available in bytes.",
    ("name",),
)
PROCESS_RESIDENT_MEMORY = _desc(
    "process_resident_memory_bytes", "Resident memory size in bytes.", ("name",)
)

ALL_METRICS: Tuple[MetricDesc, ...] = (
    UNIT_STATE,
    UNIT_INFO,
    UNIT_START_TIME,
    UNIT_TASKS_CURRENT,
    UNIT_TASKS_MAX,
    SERVICE_RESTART_TOTAL,
    TIMER_LAST_TRIGGER,
    SOCKET_ACCEPTED_CONNECTIONS,
    SOCKET_CURRENT_CONNECTIONS,
    SOCKET_REFUSED_CONNECTIONS,
    PROCESS_CPU_SECONDS,
    UNIT_CPU_SECONDS,
    UNIT_FILE_CACHE_BYTES,
    UNIT_ANON_BYTES,
    UNIT_KERNEL_STACK_BYTES,
    UNIT_FILE_CACHE_DIRTY_BYTES,
    UNIT_FILE_MAPPED_BYTES,
    PROCESS_OPEN_FDS,
    PROCESS_MAX_FDS,
    PROCESS_VIRTUAL_MEMORY,
    PROCESS_VIRTUAL_MEMORY_MAX,
    PROCESS_RESIDENT_MEMORY,
)


class SampleSink:
    """Multi-producer sink for one collection cycle.

    Unit tasks call emit() concurrently; the orchestrator calls drain() once
    after the join. Anything emitted after drain() is dropped.
    """

    def __init__(self):
        self._queue: "queue.SimpleQueue[Sample]" = queue.SimpleQueue()
        self._closed = threading.Event()

    def emit(self, desc: MetricDesc, value: float, *labels: str) -> None:
        if self._closed.is_set():
            log.debug(f"Dropping late sample for {desc.name} {labels!r}")
            return
        self._queue.put(Sample(desc, tuple(labels), float(value)))

    def drain(self) -> List[Sample]:
        self._closed.set()
        samples: List[Sample] = []
        while True:
            try:
                samples.append(self._queue.get_nowait())
            except queue.Empty:
                break
        return samples
