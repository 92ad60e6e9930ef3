# src/systemd_exporter/exporter.py
# -*- coding: utf-8 -*-

import logging
import time
import threading
from concurrent.futures import ThreadPoolExecutor, wait
from typing import Callable, Dict, Iterator, List, Optional

from prometheus_client.core import CounterMetricFamily, GaugeMetricFamily

from . import metrics
from .bus import SystemdBus
from .config import CollectorConfig
from .errors import BusError
from .metrics import MetricDesc, MetricKind, Sample, SampleSink
from .modules.cgroup import CgroupFS, detect_cgroup_fs
from .modules.collectors import collect_unit
from .modules.units import filter_units

log = logging.getLogger(__name__)


# --- Collection Cycle ---
def collect_cycle(
    config: CollectorConfig,
    connect: Callable[[bool], SystemdBus] = SystemdBus.connect,
    cgroup_fs: Optional[CgroupFS] = None,
) -> List[Sample]:
    """
    Runs one full collection: connect, enumerate, filter, fan out, join.

    Args:
        config: Collector settings.
        connect: Opens the bus connection; takes the 'private' flag.
        cgroup_fs: Cgroup hierarchy to read; detected from config when None.

    Returns:
        Every sample emitted by the unit tasks. Empty when the bus could not
        be reached or the units could not be listed.
    """
    start_time = time.monotonic()
    if cgroup_fs is None:
        cgroup_fs = detect_cgroup_fs(config.cgroupfs_path)

    try:
        bus = connect(config.private)
    except BusError as e:
        log.error(f"couldn't get dbus connection: {e}")
        return []

    sink = SampleSink()
    try:
        try:
            all_units = bus.list_units()
        except BusError as e:
            log.error(f"couldn't get units: {e}")
            return []
        units = filter_units(all_units, config.unit_whitelist, config.unit_blacklist)
        log.debug(f"Collecting {len(units)} of {len(all_units)} units")

        if units:
            max_workers = config.max_workers or len(units)
            executor = ThreadPoolExecutor(
                max_workers=max_workers, thread_name_prefix="unit-collector"
            )
            futures = [
                executor.submit(collect_unit, bus, unit, sink, config, cgroup_fs)
                for unit in units
            ]
            _done, not_done = wait(futures, timeout=config.timeout)
            if not_done:
                log.warning(
                    f"Collection cycle timed out after {config.cycle_timeout}s; "
                    f"abandoning {len(not_done)} unfinished unit task(s)"
                )
                # A task stuck in a bus read keeps its worker thread until the read
                # returns; concurrent.futures joins such threads at interpreter exit.
                executor.shutdown(wait=False, cancel_futures=True)
            else:
                executor.shutdown(wait=True)
        # Draining first means abandoned tasks can no longer add samples.
        samples = sink.drain()
    finally:
        bus.close()

    log.debug(
        f"Collection cycle produced {len(samples)} samples "
        f"in {time.monotonic() - start_time:.3f}s"
    )
    return samples


# --- Prometheus Integration ---
def _new_family(desc: MetricDesc):
    family_cls = CounterMetricFamily if desc.kind is MetricKind.COUNTER else GaugeMetricFamily
    return family_cls(desc.name, desc.help, labels=list(desc.labels))


def samples_to_families(samples: List[Sample]) -> List:
    """Groups samples into metric families, in catalogue order."""
    families: Dict[str, object] = {}
    for sample in samples:
        family = families.get(sample.desc.name)
        if family is None:
            family = _new_family(sample.desc)
            families[sample.desc.name] = family
        family.add_metric(list(sample.labels), sample.value)
    ordered = [families.pop(desc.name) for desc in metrics.ALL_METRICS if desc.name in families]
    ordered.extend(families.values())
    return ordered


class SystemdCollector:
    """Custom Prometheus collector exposing systemd unit metrics."""

    def __init__(
        self,
        config: CollectorConfig,
        interval: int = 0,
        connect: Callable[[bool], SystemdBus] = SystemdBus.connect,
    ):
        self.config = config
        self.interval = interval
        self.connect = connect
        self.cgroup_fs = detect_cgroup_fs(config.cgroupfs_path)
        self.cached_samples: Optional[List[Sample]] = None
        self.lock = threading.Lock()

    def run_periodic_collection(self, stop_event: Optional[threading.Event] = None):
        """The main loop for the background thread to periodically collect data."""
        log.info(f"Starting periodic collection thread (interval: {self.interval}s).")
        stop_event = stop_event or threading.Event()
        while not stop_event.is_set():
            self.refresh()
            stop_event.wait(self.interval)

    def refresh(self) -> List[Sample]:
        samples = collect_cycle(self.config, connect=self.connect, cgroup_fs=self.cgroup_fs)
        with self.lock:
            self.cached_samples = samples
        return samples

    def describe(self) -> Iterator:
        for desc in metrics.ALL_METRICS:
            yield _new_family(desc)

    def collect(self) -> Iterator:
        """
        Called by the Prometheus client library on every scrape. Serves the
        cached samples in periodic mode, otherwise runs a cycle right away.
        """
        if self.interval > 0:
            log.debug("Prometheus scrape received, serving metrics from cache.")
            with self.lock:
                samples = self.cached_samples
            if samples is None:
                log.warning("Serving no metrics: collection has not completed yet.")
                return
        else:
            log.debug("Prometheus scrape received, collecting.")
            samples = collect_cycle(self.config, connect=self.connect, cgroup_fs=self.cgroup_fs)
        yield from samples_to_families(samples)
