# src/systemd_exporter/modules/cgroup.py
# -*- coding: utf-8 -*-

import logging
from pathlib import Path
from typing import Dict, Union

from ..datatypes import CPUAccounting, MemoryAccounting, UINT64_SENTINEL
from ..errors import (
    IncompleteDataError,
    MalformedLineError,
    StatFileUnavailableError,
)

log = logging.getLogger(__name__)

# --- Constants ---
DEFAULT_CGROUP_MOUNT = Path("/sys/fs/cgroup")
# /proc and /sys files report bogus sizes (0 or 4096), so read without stat
# and cap the read instead.
MAX_STAT_FILE_SIZE = 512 * 1024

CPU_STAT_FILE = "cpu.stat"
MEMORY_STAT_FILE = "memory.stat"

CPU_STAT_KEYS = {
    "usage_usec": "total_usec",
    "user_usec": "user_usec",
    "system_usec": "system_usec",
}

MEMORY_STAT_KEYS: Dict[str, str] = {
    "anon": "anon_bytes",
    "file": "file_bytes",
    "kernel_stack": "kernel_stack_bytes",
    "pagetables": "page_tables_bytes",
    "percpu": "per_cpu_bytes",
    "sock": "sock_bytes",
    "shmem": "shmem_bytes",
    "file_mapped": "file_mapped_bytes",
    "file_dirty": "file_dirty_bytes",
    "file_writeback": "file_writeback_bytes",
    "swapcached": "swapcached_bytes",
    "anon_thp": "anon_thp_bytes",
    "file_thp": "file_thp_bytes",
    "shmem_thp": "shmem_thp_bytes",
    "inactive_anon": "inactive_anon_bytes",
    "active_anon": "active_anon_bytes",
    "inactive_file": "inactive_file_bytes",
    "active_file": "active_file_bytes",
    "unevictable": "unevictable_bytes",
    "slab_reclaimable": "slab_reclaimable_bytes",
    "slab_unreclaimable": "slab_unreclaimable_bytes",
    "slab": "slab_bytes",
    "workingset_refault_anon": "workingset_refault_anon",
    "workingset_refault_file": "workingset_refault_file",
    # Older exporters matched this camel-cased spelling; accept both.
    "workingsetRefault_file": "workingset_refault_file",
    "workingset_activate_anon": "workingset_activate_anon",
    "workingset_activate_file": "workingset_activate_file",
    "workingset_restore_anon": "workingset_restore_anon",
    "workingset_restore_file": "workingset_restore_file",
    "workingset_nodereclaim": "workingset_nodereclaim",
    "pgfault": "pgfault",
    "pgmajfault": "pgmajfault",
    "pgrefill": "pgrefill",
    "pgscan": "pgscan",
    "pgsteal": "pgsteal",
    "pgactivate": "pgactivate",
    "pgdeactivate": "pgdeactivate",
    "pglazyfree": "pglazyfree",
    "pglazyfreed": "pglazyfreed",
    "thp_fault_alloc": "thp_fault_alloc",
    "thp_collapse_alloc": "thp_collapse_alloc",
}


# --- Cgroup Filesystem Layout ---
class CgroupFS:
    """Locates per-unit accounting files under a cgroup mountpoint.

    On the unified (v2) hierarchy every controller lives in the same tree;
    on legacy (v1) hosts each controller has its own subdirectory.
    """

    def __init__(self, mount_point: Union[str, Path] = DEFAULT_CGROUP_MOUNT, unified: bool = True):
        self.mount_point = Path(mount_point)
        self.unified = unified

    def __repr__(self):
        layout = "unified" if self.unified else "legacy"
        return f"CgroupFS({str(self.mount_point)!r}, {layout})"

    def path_for(self, controller: str, subpath: str, filename: str) -> Path:
        relative = subpath.lstrip("/")
        if self.unified:
            return self.mount_point / relative / filename
        return self.mount_point / controller / relative / filename


def detect_cgroup_fs(mount_point: Union[str, Path] = DEFAULT_CGROUP_MOUNT) -> CgroupFS:
    """Works out whether the host runs a unified, hybrid or legacy hierarchy."""
    root = Path(mount_point)
    if (root / "cgroup.controllers").is_file():
        log.debug(f"Detected unified cgroup hierarchy at {root}")
        return CgroupFS(root, unified=True)
    hybrid_root = root / "unified"
    if (hybrid_root / "cgroup.controllers").is_file():
        log.debug(f"Detected hybrid cgroup hierarchy, using {hybrid_root}")
        return CgroupFS(hybrid_root, unified=True)
    log.debug(f"No cgroup2 controllers file under {root}, assuming legacy hierarchy")
    return CgroupFS(root, unified=False)


# --- File Reading ---
def read_file_no_stat(path: Union[str, Path], max_size: int = MAX_STAT_FILE_SIZE) -> str:
    """Reads at most max_size bytes from a pseudo-file.

    Raises StatFileUnavailableError if the file cannot be opened or read.
    """
    try:
        with open(path, "rb") as f:
            content = f.read(max_size)
    except OSError as e:
        raise StatFileUnavailableError(f"unable to read file {path}: {e}", str(path)) from e
    return content.decode("utf-8", errors="replace")


def _parse_uint64(text: str, base: int = 10) -> int:
    """Parses an unsigned 64-bit integer.

    With base 0 the literal prefixes 0x, 0o, 0b and a bare leading zero
    (octal) are honoured.
    """
    if text.startswith(("+", "-")):
        raise ValueError(f"invalid unsigned integer {text!r}")
    if base == 0:
        lowered = text.lower()
        if lowered.startswith(("0x", "0o", "0b")):
            value = int(text, 0)
        elif len(text) > 1 and text.startswith("0"):
            value = int(text[1:], 8)
        else:
            value = int(text, 10)
    else:
        if not text.isdigit():
            raise ValueError(f"invalid unsigned integer {text!r}")
        value = int(text, base)
    if value > UINT64_SENTINEL:
        raise ValueError(f"{text!r} overflows uint64")
    return value


# --- Parsers ---
def parse_cpu_stat(content: str, source: str = CPU_STAT_FILE) -> CPUAccounting:
    """Parses cgroup v2 cpu.stat content.

    Example::

        usage_usec 34565924
        user_usec 21165924
        system_usec 13334251
        nr_periods 0

    usage_usec, user_usec and system_usec must all be present.
    """
    values: Dict[str, int] = {}
    for line_num, line in enumerate(content.splitlines(), start=1):
        if not line.strip():
            continue
        parts = line.split(" ")
        if len(parts) != 2:
            raise MalformedLineError(
                f"unable to parse contents of file {source} (line {line_num}): {line!r}",
                source,
            )
        key, raw_value = parts
        try:
            value = _parse_uint64(raw_value, 10)
        except ValueError as e:
            raise MalformedLineError(
                f"unable to parse {raw_value} as uint64 (from {source})", source
            ) from e
        if key in CPU_STAT_KEYS:
            values[CPU_STAT_KEYS[key]] = value

    missing = sorted(k for k, field_name in CPU_STAT_KEYS.items() if field_name not in values)
    if missing:
        raise IncompleteDataError(
            f"no / incomplete info extracted from {source} (missing {', '.join(missing)})",
            source,
        )
    return CPUAccounting(**values)


def parse_memory_stat(content: str, source: str = MEMORY_STAT_FILE) -> MemoryAccounting:
    """Parses cgroup v2 memory.stat content; unknown keys are ignored."""
    values: Dict[str, int] = {}
    for line in content.splitlines():
        fields = line.split()
        if len(fields) < 2:
            raise MalformedLineError(f"malformed memory.stat line: {line!r}", source)
        try:
            value = _parse_uint64(fields[1], 0)
        except ValueError as e:
            raise MalformedLineError(
                f"failed to parse {source}: {fields[0]} value {fields[1]!r}: {e}",
                source,
            ) from e
        field_name = MEMORY_STAT_KEYS.get(fields[0])
        if field_name is not None:
            values[field_name] = value
    return MemoryAccounting(**values)


# --- Readers ---
def read_cpu_accounting(cgroup_fs: CgroupFS, subpath: str) -> CPUAccounting:
    path = cgroup_fs.path_for("cpu", subpath, CPU_STAT_FILE)
    content = read_file_no_stat(path)
    return parse_cpu_stat(content, str(path))


def read_memory_accounting(cgroup_fs: CgroupFS, subpath: str) -> MemoryAccounting:
    path = cgroup_fs.path_for("memory", subpath, MEMORY_STAT_FILE)
    content = read_file_no_stat(path)
    return parse_memory_stat(content, str(path))

