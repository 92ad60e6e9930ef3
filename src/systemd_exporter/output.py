# src/systemd_exporter/output.py
# -*- coding: utf-8 -*-

import json
import logging
from typing import Any, Dict, List, Optional, Sequence

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from .metrics import ALL_METRICS, MetricDesc, Sample

log = logging.getLogger(__name__)


# --- Helper Functions ---
def _format_bytes(byte_count: Optional[float]) -> str:
    """Formats bytes into human-readable format (KiB, MiB, GiB)."""
    if byte_count is None:
        return "[dim]n/a[/dim]"
    if byte_count < 1024:
        return f"{byte_count:.0f} B"
    elif byte_count < 1024**2:
        return f"{byte_count / 1024:.1f} KiB"
    elif byte_count < 1024**3:
        return f"{byte_count / (1024**2):.1f} MiB"
    else:
        return f"{byte_count / (1024**3):.1f} GiB"


def _format_seconds(sec_count: Optional[float]) -> str:
    """Formats seconds into a human-readable string (s, m, h)."""
    if sec_count is None:
        return "[dim]n/a[/dim]"
    if sec_count < 60.0:
        return f"{sec_count:.2f}s"
    minutes = sec_count / 60.0
    if minutes < 60.0:
        return f"{minutes:.1f}m"
    hours = minutes / 60.0
    return f"{hours:.1f}h"


def _format_value(desc: MetricDesc, value: float) -> str:
    # Timestamps are left raw, durations and sizes get units.
    if desc.name.endswith("_bytes"):
        return _format_bytes(value)
    if desc.name.endswith("_cpu_seconds_total"):
        return _format_seconds(value)
    if value.is_integer():
        return f"{value:.0f}"
    return f"{value:g}"


def _format_labels(sample: Sample) -> str:
    return ", ".join(f"{k}={v}" for k, v in sample.label_dict.items() if v != "")


def _sorted_samples(samples: Sequence[Sample]) -> List[Sample]:
    return sorted(samples, key=lambda s: (s.labels[0] if s.labels else "", s.desc.name, s.labels))


# --- Sample Output ---
def format_samples_table(samples: Sequence[Sample], console: Console) -> None:
    """Prints the samples of one collection cycle as a Rich table."""
    if not samples:
        console.print(
            Panel(
                "[yellow]No samples collected. Check the log for bus or permission errors.[/yellow]",
                title="Collection",
                border_style="dim",
            )
        )
        return

    table = Table(
        title=f"Collected Samples ({len(samples)})",
        show_header=True,
        header_style="bold cyan",
        expand=True,
    )
    table.add_column("Metric", style="cyan", no_wrap=True)
    table.add_column("Labels", style="dim")
    table.add_column("Value", style="magenta", justify="right")
    for sample in _sorted_samples(samples):
        table.add_row(sample.desc.name, _format_labels(sample), _format_value(sample.desc, sample.value))
    console.print(table)


def samples_to_dicts(samples: Sequence[Sample]) -> List[Dict[str, Any]]:
    return [
        {"name": s.desc.name, "labels": s.label_dict, "value": s.value}
        for s in _sorted_samples(samples)
    ]


def format_json_samples(samples: Sequence[Sample]) -> str:
    """Formats the samples as a JSON array of {name, labels, value} objects."""
    return json.dumps(samples_to_dicts(samples), indent=2)


# --- Metric Catalogue ---
def format_metric_catalogue(console: Console) -> None:
    table = Table(title="Exported Metrics", show_header=True, header_style="bold cyan", expand=True)
    table.add_column("Name", style="cyan", no_wrap=True)
    table.add_column("Type", style="green", width=8)
    table.add_column("Labels", style="magenta")
    table.add_column("Help")
    for desc in ALL_METRICS:
        table.add_row(desc.name, desc.kind.value, ", ".join(desc.labels), desc.help)
    console.print(table)
