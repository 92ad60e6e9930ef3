# src/systemd_exporter/modules/processes.py
# -*- coding: utf-8 -*-

import logging
from typing import Optional

import psutil

from ..datatypes import ProcessStats
from ..errors import ExporterError, ProcessGoneError

log = logging.getLogger(__name__)

DEFAULT_PROCFS_PATH = "/proc"


def configure_procfs(procfs_path: str = DEFAULT_PROCFS_PATH) -> None:
    """Points psutil at the procfs mountpoint (e.g. a host /proc inside a container).

    Called once at startup, before any collection cycle runs.
    """
    if psutil.PROCFS_PATH != procfs_path:
        log.info(f"Using procfs mountpoint {procfs_path}")
        psutil.PROCFS_PATH = procfs_path


def _soft_limit(proc: "psutil.Process", resource: int) -> Optional[int]:
    """Returns the soft limit, or None when it is unlimited."""
    soft, _hard = proc.rlimit(resource)
    if soft == psutil.RLIM_INFINITY or soft < 0:
        return None
    return soft


def _read_limits(proc: "psutil.Process", pid: int):
    """Soft NOFILE and AS limits; either is None when unlimited or unreadable.

    prlimit() on another user's process needs CAP_SYS_RESOURCE, so a
    non-root exporter gets AccessDenied here for most services.
    """
    limits = []
    for resource in (psutil.RLIMIT_NOFILE, psutil.RLIMIT_AS):
        try:
            limits.append(_soft_limit(proc, resource))
        except psutil.AccessDenied:
            log.debug(f"PID {pid}: access denied reading resource limit {resource}")
            limits.append(None)
    return limits


def read_process_stats(pid: int, include_fd_count: bool = False) -> ProcessStats:
    """
    Reads CPU time, memory and limits for one process.

    Args:
        pid: The process id (a service's MainPID).
        include_fd_count: Also count open file descriptors. Needs access to
            /proc/<pid>/fd and walks the directory, so it is opt-in.

    Raises:
        ProcessGoneError: the process exited before it could be read.
        ExporterError: access was denied or psutil failed otherwise.
    """
    try:
        proc = psutil.Process(pid)
        with proc.oneshot():
            cpu_times = proc.cpu_times()
            mem_info = proc.memory_info()
        stats = ProcessStats(
            pid=pid,
            cpu_seconds=cpu_times.user + cpu_times.system,
            virtual_memory_bytes=mem_info.vms,
            resident_memory_bytes=mem_info.rss,
        )
        stats.max_fds, stats.max_address_space_bytes = _read_limits(proc, pid)
        if include_fd_count:
            try:
                stats.open_fds = proc.num_fds()
            except psutil.AccessDenied:
                log.debug(f"PID {pid}: access denied counting open file descriptors")
    except psutil.NoSuchProcess as e:
        raise ProcessGoneError(f"process {pid} no longer exists") from e
    except psutil.AccessDenied as e:
        raise ExporterError(f"access denied reading process {pid}") from e
    except psutil.Error as e:
        raise ExporterError(f"couldn't read process {pid}: {e}") from e
    log.debug(
        f"PID {pid}: cpu={stats.cpu_seconds:.2f}s rss={stats.resident_memory_bytes} "
        f"vms={stats.virtual_memory_bytes}"
    )
    return stats
