# tests/modules/test_collectors.py
# -*- coding: utf-8 -*-

import logging

import psutil
import pytest
from unittest.mock import patch

from systemd_exporter import metrics
from systemd_exporter.config import CollectorConfig
from systemd_exporter.datatypes import ProcessStats, UINT64_SENTINEL
from systemd_exporter.errors import ProcessGoneError, PropertyError
from systemd_exporter.metrics import SampleSink
from systemd_exporter.modules import collectors
from systemd_exporter.modules.cgroup import CgroupFS

from conftest import FakeBus, boolean, make_unit, string, uint32, uint64, write_unit_cgroup

FOO_CGROUP = "/system.slice/foo.service"
FOO_CPU_STAT = "usage_usec 100000\nuser_usec 60000\nsystem_usec 40000\n"
FOO_MEMORY_STAT = "anon 4096\nfile 8192\nkernel_stack 0\nfile_dirty 0\nfile_mapped 0\n"


# --- Helpers ---

def _samples(sink_or_list, desc):
    samples = sink_or_list.drain() if isinstance(sink_or_list, SampleSink) else sink_or_list
    return [s for s in samples if s.desc is desc]


def _by_label(samples, label):
    return {s.label_dict[label]: s.value for s in samples}


def _service_props(name, **overrides):
    props = {
        (name, "Service", "ControlGroup"): string(f"/system.slice/{name}"),
        (name, "Service", "Type"): string("simple"),
        (name, "Unit", "ActiveEnterTimestamp"): uint64(1_600_000_000_000_000),
        (name, "Service", "TasksCurrent"): uint64(3),
        (name, "Service", "TasksMax"): uint64(4915),
        (name, "Service", "MainPID"): uint32(0),
        (name, "Service", "NRestarts"): uint32(2),
    }
    for prop, value in overrides.items():
        interface = "Unit" if prop == "ActiveEnterTimestamp" else "Service"
        props[(name, interface, prop)] = value
    return props


@pytest.fixture
def cgroup_fs(cgroup_root):
    return CgroupFS(cgroup_root, unified=True)


# --- End-to-end ---

def test_collect_unit_service_end_to_end(cgroup_root, cgroup_fs, default_collector_config):
    unit = make_unit("foo.service", active_state="active")
    write_unit_cgroup(cgroup_root, FOO_CGROUP, FOO_CPU_STAT, FOO_MEMORY_STAT)
    bus = FakeBus(units=[unit], properties=_service_props("foo.service"))
    sink = SampleSink()

    collectors.collect_unit(bus, unit, sink, default_collector_config, cgroup_fs)
    samples = sink.drain()

    states = _by_label(_samples(samples, metrics.UNIT_STATE), "state")
    assert states == {
        "active": 1.0, "activating": 0.0, "deactivating": 0.0, "inactive": 0.0, "failed": 0.0,
    }
    cpu = _by_label(_samples(samples, metrics.UNIT_CPU_SECONDS), "mode")
    assert cpu == {"user": pytest.approx(0.06), "system": pytest.approx(0.04)}
    assert [s.value for s in _samples(samples, metrics.UNIT_ANON_BYTES)] == [4096.0]
    assert [s.value for s in _samples(samples, metrics.UNIT_FILE_CACHE_BYTES)] == [8192.0]
    anon = _samples(samples, metrics.UNIT_ANON_BYTES)[0]
    assert anon.label_dict == {"name": "foo.service", "type": "service"}

    info = _samples(samples, metrics.UNIT_INFO)
    assert len(info) == 1
    assert info[0].label_dict == {
        "name": "foo.service", "type": "service", "mount_type": "", "service_type": "simple",
    }
    assert _samples(samples, metrics.UNIT_START_TIME)[0].value == 1_600_000_000.0
    assert _samples(samples, metrics.UNIT_TASKS_CURRENT)[0].value == 3
    assert _samples(samples, metrics.UNIT_TASKS_MAX)[0].value == 4915
    # Restart counter is off by default, MainPID 0 means no process metrics
    assert _samples(samples, metrics.SERVICE_RESTART_TOTAL) == []
    assert _samples(samples, metrics.PROCESS_CPU_SECONDS) == []


def test_collect_unit_missing_cgroup_files_still_emits_state(cgroup_fs, default_collector_config):
    unit = make_unit("foo.service")
    bus = FakeBus(units=[unit], properties=_service_props("foo.service"))
    sink = SampleSink()
    collectors.collect_unit(bus, unit, sink, default_collector_config, cgroup_fs)
    samples = sink.drain()
    assert len(_samples(samples, metrics.UNIT_STATE)) == 5
    assert _samples(samples, metrics.UNIT_CPU_SECONDS) == []
    assert _samples(samples, metrics.UNIT_ANON_BYTES) == []
    assert len(_samples(samples, metrics.UNIT_INFO)) == 1


def test_collect_unit_isolates_collector_failures(cgroup_fs, default_collector_config, caplog):
    unit = make_unit("foo.service")
    props = _service_props("foo.service", Type=uint32(7))
    bus = FakeBus(units=[unit], properties=props)
    sink = SampleSink()
    with caplog.at_level(logging.WARNING):
        collectors.collect_unit(bus, unit, sink, default_collector_config, cgroup_fs)
    samples = sink.drain()
    assert _samples(samples, metrics.UNIT_INFO) == []
    assert len(_samples(samples, metrics.UNIT_TASKS_CURRENT)) == 1
    assert "foo.service" in caplog.text


def test_collect_unit_unexpected_exception_is_contained(cgroup_fs, default_collector_config):
    unit = make_unit("foo.service")
    bus = FakeBus(units=[unit], properties=_service_props("foo.service"))
    sink = SampleSink()
    with patch.object(collectors, "collect_tasks", side_effect=RuntimeError("boom")):
        collectors.collect_unit(bus, unit, sink, default_collector_config, cgroup_fs)
    samples = sink.drain()
    assert len(_samples(samples, metrics.UNIT_STATE)) == 5
    assert _samples(samples, metrics.UNIT_TASKS_CURRENT) == []


def test_collect_unit_target_only_state(cgroup_fs, default_collector_config):
    unit = make_unit("multi-user.target")
    bus = FakeBus(units=[unit])
    sink = SampleSink()
    collectors.collect_unit(bus, unit, sink, default_collector_config, cgroup_fs)
    samples = sink.drain()
    assert {s.desc for s in samples} == {metrics.UNIT_STATE}
    assert bus.calls == []


def test_collect_unit_slice_reads_cgroup(cgroup_root, cgroup_fs, default_collector_config):
    unit = make_unit("system.slice")
    write_unit_cgroup(cgroup_root, "/system.slice", FOO_CPU_STAT, FOO_MEMORY_STAT)
    bus = FakeBus(
        units=[unit],
        properties={("system.slice", "Slice", "ControlGroup"): string("/system.slice")},
    )
    sink = SampleSink()
    collectors.collect_unit(bus, unit, sink, default_collector_config, cgroup_fs)
    samples = sink.drain()
    assert len(_samples(samples, metrics.UNIT_CPU_SECONDS)) == 2
    assert _samples(samples, metrics.UNIT_INFO) == []


@pytest.mark.parametrize("name, has_handler", [("dev-swap.swap", True), ("system.slice", True), ("proc.automount", False)])
def test_collect_unit_handler_log(cgroup_fs, default_collector_config, caplog, name, has_handler):
    unit = make_unit(name)
    sink = SampleSink()
    with caplog.at_level(logging.DEBUG, logger="systemd_exporter.modules.collectors"):
        collectors.collect_unit(FakeBus(units=[unit]), unit, sink, default_collector_config, cgroup_fs)
    assert ("no unit type handler" in caplog.text) is not has_handler
    assert len(_samples(sink, metrics.UNIT_STATE)) == 5


# --- Individual collectors ---

def test_collect_unit_state_one_hot():
    sink = SampleSink()
    collectors.collect_unit_state(None, make_unit("x.service", active_state="failed"), sink)
    values = _by_label(_samples(sink, metrics.UNIT_STATE), "state")
    assert values["failed"] == 1.0
    assert sum(values.values()) == 1.0


def test_collect_unit_state_unknown_state_all_zero():
    sink = SampleSink()
    collectors.collect_unit_state(None, make_unit("x.service", active_state="reloading"), sink)
    values = _by_label(_samples(sink, metrics.UNIT_STATE), "state")
    assert len(values) == 5
    assert sum(values.values()) == 0.0


def test_collect_start_time_inactive_is_zero():
    unit = make_unit("foo.service", active_state="inactive")
    bus = FakeBus()
    sink = SampleSink()
    collectors.collect_start_time(bus, unit, sink)
    assert _samples(sink, metrics.UNIT_START_TIME)[0].value == 0.0
    assert bus.calls == []


def test_collect_mount_info():
    unit = make_unit("boot.mount")
    bus = FakeBus(properties={("boot.mount", "Mount", "Type"): string("ext4")})
    sink = SampleSink()
    collectors.collect_mount_info(bus, unit, sink)
    sample = _samples(sink, metrics.UNIT_INFO)[0]
    assert sample.label_dict["mount_type"] == "ext4"
    assert sample.label_dict["service_type"] == ""


def test_collect_restart_count_uses_unit_name_label():
    unit = make_unit("foo.service")
    bus = FakeBus(properties=_service_props("foo.service"))
    sink = SampleSink()
    collectors.collect_restart_count(bus, unit, sink)
    sample = _samples(sink, metrics.SERVICE_RESTART_TOTAL)[0]
    assert sample.labels == ("foo.service",)
    assert sample.value == 2


def test_collect_unit_restart_count_enabled(cgroup_fs):
    config = CollectorConfig.from_mapping({"enable_restart_count": True})
    unit = make_unit("foo.service")
    bus = FakeBus(properties=_service_props("foo.service"))
    sink = SampleSink()
    collectors.collect_unit(bus, unit, sink, config, cgroup_fs)
    assert len(_samples(sink, metrics.SERVICE_RESTART_TOTAL)) == 1


def test_collect_tasks_sentinel_suppressed():
    unit = make_unit("foo.service")
    props = _service_props(
        "foo.service", TasksCurrent=uint64(UINT64_SENTINEL), TasksMax=uint64(UINT64_SENTINEL)
    )
    sink = SampleSink()
    collectors.collect_tasks(FakeBus(properties=props), unit, sink)
    assert sink.drain() == []


def test_collect_tasks_stops_after_current_failure():
    unit = make_unit("foo.service")
    props = _service_props("foo.service", TasksCurrent=PropertyError("foo.service", "TasksCurrent"))
    bus = FakeBus(properties=props)
    sink = SampleSink()
    with pytest.raises(PropertyError):
        collectors.collect_tasks(bus, unit, sink)
    assert ("foo.service", "Service", "TasksMax") not in bus.calls


@patch("systemd_exporter.modules.collectors.read_process_stats")
def test_collect_process_emits_available_values(mock_read):
    mock_read.return_value = ProcessStats(
        pid=42, cpu_seconds=2.5, virtual_memory_bytes=1000, resident_memory_bytes=500,
        max_fds=1024, max_address_space_bytes=None, open_fds=None,
    )
    unit = make_unit("foo.service")
    bus = FakeBus(properties=_service_props("foo.service", MainPID=uint32(42)))
    sink = SampleSink()
    collectors.collect_process(bus, unit, sink)
    mock_read.assert_called_once_with(42, include_fd_count=False)
    names = {s.desc.name for s in sink.drain()}
    assert names == {
        "systemd_process_cpu_seconds_total",
        "systemd_process_virtual_memory_bytes",
        "systemd_process_resident_memory_bytes",
        "systemd_process_max_fds",
    }


@patch("systemd_exporter.modules.processes.psutil.Process")
def test_collect_process_limits_denied_still_emits_usage(mock_process_cls):
    proc = mock_process_cls.return_value
    proc.cpu_times.return_value.user = 1.5
    proc.cpu_times.return_value.system = 0.5
    proc.memory_info.return_value.vms = 1000
    proc.memory_info.return_value.rss = 500
    proc.rlimit.side_effect = psutil.AccessDenied(42)
    unit = make_unit("foo.service")
    bus = FakeBus(properties=_service_props("foo.service", MainPID=uint32(42)))
    sink = SampleSink()
    collectors._run("process", unit, lambda: collectors.collect_process(bus, unit, sink))
    names = {s.desc.name for s in sink.drain()}
    assert names == {
        "systemd_process_cpu_seconds_total",
        "systemd_process_virtual_memory_bytes",
        "systemd_process_resident_memory_bytes",
    }


@patch("systemd_exporter.modules.collectors.read_process_stats")
def test_collect_process_no_main_pid(mock_read):
    unit = make_unit("foo.service")
    sink = SampleSink()
    collectors.collect_process(FakeBus(properties=_service_props("foo.service")), unit, sink)
    mock_read.assert_not_called()
    assert sink.drain() == []


@patch("systemd_exporter.modules.collectors.read_process_stats")
def test_collect_process_gone_propagates(mock_read):
    mock_read.side_effect = ProcessGoneError("process 42 no longer exists")
    unit = make_unit("foo.service")
    bus = FakeBus(properties=_service_props("foo.service", MainPID=uint32(42)))
    with pytest.raises(ProcessGoneError):
        collectors.collect_process(bus, unit, SampleSink())


def test_collect_timer_trigger():
    unit = make_unit("backup.timer")
    bus = FakeBus(properties={("backup.timer", "Timer", "LastTriggerUSec"): uint64(1_500_000)})
    sink = SampleSink()
    collectors.collect_timer_trigger(bus, unit, sink)
    assert _samples(sink, metrics.TIMER_LAST_TRIGGER)[0].value == 1.5


def test_collect_timer_trigger_never_triggered():
    unit = make_unit("backup.timer")
    bus = FakeBus(properties={("backup.timer", "Timer", "LastTriggerUSec"): uint64(UINT64_SENTINEL)})
    sink = SampleSink()
    collectors.collect_timer_trigger(bus, unit, sink)
    assert sink.drain() == []


def test_collect_socket_connections_without_refused(caplog):
    unit = make_unit("ssh.socket")
    bus = FakeBus(properties={
        ("ssh.socket", "Socket", "NAccepted"): uint32(10),
        ("ssh.socket", "Socket", "NConnections"): uint32(1),
    })
    sink = SampleSink()
    with caplog.at_level(logging.WARNING):
        collectors.collect_socket_connections(bus, unit, sink)
    samples = sink.drain()
    assert _samples(samples, metrics.SOCKET_ACCEPTED_CONNECTIONS)[0].value == 10
    assert _samples(samples, metrics.SOCKET_CURRENT_CONNECTIONS)[0].value == 1
    assert _samples(samples, metrics.SOCKET_REFUSED_CONNECTIONS) == []
    # NRefused is missing on older systemd versions; that is not a warning
    assert "NRefused" not in caplog.text


def test_collect_socket_connections_independent_reads():
    unit = make_unit("ssh.socket")
    bus = FakeBus(properties={
        ("ssh.socket", "Socket", "NAccepted"): string("oops"),
        ("ssh.socket", "Socket", "NConnections"): uint32(1),
        ("ssh.socket", "Socket", "NRefused"): uint32(4),
    })
    sink = SampleSink()
    collectors.collect_socket_connections(bus, unit, sink)
    samples = sink.drain()
    assert _samples(samples, metrics.SOCKET_ACCEPTED_CONNECTIONS) == []
    assert _samples(samples, metrics.SOCKET_REFUSED_CONNECTIONS)[0].value == 4


def test_collect_cgroup_cpu_malformed_file(cgroup_root, cgroup_fs, caplog):
    unit = make_unit("foo.service")
    write_unit_cgroup(cgroup_root, FOO_CGROUP, "usage_usec 1\n", None)
    sink = SampleSink()
    with caplog.at_level(logging.WARNING):
        collectors._run(
            "cgroup cpu", unit,
            lambda: collectors.collect_cgroup_cpu(cgroup_fs, FOO_CGROUP, unit, sink),
        )
    assert sink.drain() == []
    assert "foo.service" in caplog.text


def test_remain_after_exit_service_skips_cgroup(cgroup_fs, default_collector_config):
    unit = make_unit("oneshot.service")
    props = _service_props(
        "oneshot.service", ControlGroup=string(""), RemainAfterExit=boolean(True)
    )
    sink = SampleSink()
    collectors.collect_unit(FakeBus(properties=props), unit, sink, default_collector_config, cgroup_fs)
    samples = sink.drain()
    assert _samples(samples, metrics.UNIT_CPU_SECONDS) == []
    assert len(_samples(samples, metrics.UNIT_STATE)) == 5
