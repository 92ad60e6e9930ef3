# tests/modules/test_processes.py
# -*- coding: utf-8 -*-

import pytest
from unittest.mock import patch, MagicMock

import psutil

from systemd_exporter.modules import processes
from systemd_exporter.errors import ExporterError, ProcessGoneError


# --- Helpers ---

def _mock_process(nofile=(1024, 4096), address_space=(psutil.RLIM_INFINITY, psutil.RLIM_INFINITY)):
    proc = MagicMock()
    proc.cpu_times.return_value = MagicMock(user=1.5, system=0.5)
    proc.memory_info.return_value = MagicMock(vms=200 * 1024**2, rss=50 * 1024**2)
    limits = {psutil.RLIMIT_NOFILE: nofile, psutil.RLIMIT_AS: address_space}
    proc.rlimit.side_effect = lambda resource: limits[resource]
    proc.num_fds.return_value = 17
    return proc


# --- Test Cases ---

@patch("systemd_exporter.modules.processes.psutil.Process")
def test_read_process_stats_success(mock_process_cls):
    mock_process_cls.return_value = _mock_process()
    stats = processes.read_process_stats(1234)
    mock_process_cls.assert_called_once_with(1234)
    assert stats.pid == 1234
    assert stats.cpu_seconds == pytest.approx(2.0)
    assert stats.virtual_memory_bytes == 200 * 1024**2
    assert stats.resident_memory_bytes == 50 * 1024**2
    assert stats.max_fds == 1024
    # Unlimited address space is reported as None
    assert stats.max_address_space_bytes is None
    # fd counting is opt-in
    assert stats.open_fds is None
    mock_process_cls.return_value.num_fds.assert_not_called()


@patch("systemd_exporter.modules.processes.psutil.Process")
def test_read_process_stats_with_fd_count_and_as_limit(mock_process_cls):
    mock_process_cls.return_value = _mock_process(address_space=(8 * 1024**3, psutil.RLIM_INFINITY))
    stats = processes.read_process_stats(1234, include_fd_count=True)
    assert stats.open_fds == 17
    assert stats.max_address_space_bytes == 8 * 1024**3


@patch("systemd_exporter.modules.processes.psutil.Process")
def test_read_process_stats_process_gone(mock_process_cls):
    mock_process_cls.side_effect = psutil.NoSuchProcess(1234)
    with pytest.raises(ProcessGoneError):
        processes.read_process_stats(1234)


@patch("systemd_exporter.modules.processes.psutil.Process")
def test_read_process_stats_access_denied(mock_process_cls):
    proc = _mock_process()
    proc.cpu_times.side_effect = psutil.AccessDenied(1234)
    mock_process_cls.return_value = proc
    with pytest.raises(ExporterError) as excinfo:
        processes.read_process_stats(1234)
    assert not isinstance(excinfo.value, ProcessGoneError)
    assert "access denied" in str(excinfo.value)


def test_configure_procfs():
    original = psutil.PROCFS_PATH
    try:
        processes.configure_procfs("/host/proc")
        assert psutil.PROCFS_PATH == "/host/proc"
    finally:
        psutil.PROCFS_PATH = original


@patch("systemd_exporter.modules.processes.psutil.Process")
def test_read_process_stats_limits_denied_keeps_usage(mock_process_cls):
    # Non-root: prlimit() on another user's process fails with EPERM
    proc = _mock_process()
    proc.rlimit.side_effect = psutil.AccessDenied(42)
    mock_process_cls.return_value = proc
    stats = processes.read_process_stats(42)
    assert stats.cpu_seconds == pytest.approx(2.0)
    assert stats.virtual_memory_bytes == 200 * 1024**2
    assert stats.resident_memory_bytes == 50 * 1024**2
    assert stats.max_fds is None
    assert stats.max_address_space_bytes is None


@patch("systemd_exporter.modules.processes.psutil.Process")
def test_read_process_stats_fd_count_denied_keeps_usage(mock_process_cls):
    proc = _mock_process()
    proc.num_fds.side_effect = psutil.AccessDenied(42)
    mock_process_cls.return_value = proc
    stats = processes.read_process_stats(42, include_fd_count=True)
    assert stats.open_fds is None
    assert stats.max_fds == 1024
    assert stats.resident_memory_bytes == 50 * 1024**2
