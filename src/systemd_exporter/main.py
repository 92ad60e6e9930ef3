# src/systemd_exporter/main.py
import json
import logging
import os
import threading
import time
from pathlib import Path
from typing import Any, Dict, Optional

import typer
from prometheus_client import REGISTRY, start_http_server
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.syntax import Syntax

# --- Local Imports ---
from . import bus as bus_logic
from .config import CollectorConfig, load_config
from .exporter import SystemdCollector, collect_cycle
from .modules.processes import configure_procfs
from .output import format_json_samples, format_metric_catalogue, format_samples_table

LOG_LEVEL = logging.INFO

CONSOLE = Console()
CONSOLE_ERR = Console(stderr=True)

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(message)s",
    datefmt="[%X]",
    handlers=[RichHandler(console=CONSOLE_ERR, rich_tracebacks=True, show_path=False)],
)
log = logging.getLogger(__name__)

app = typer.Typer(
    help="systemd-exporter: Prometheus exporter for systemd units and their cgroups."
)


@app.callback()
def main_callback(
    verbose: bool = typer.Option(
        False, "--verbose", "-v", help="Enable debug logging."
    ),
):
    if verbose:
        logging.getLogger().setLevel(logging.DEBUG)
        log.debug("Debug logging enabled.")


def check_privileges(required_for: str = "some checks") -> bool:
    is_root = False
    try:
        if os.geteuid() == 0:
            is_root = True
        else:
            log.warning(
                f"Running without root privileges. Required for {required_for}. "
                "Some metrics may be missing."
            )
    except AttributeError:
        log.warning("Could not determine user privileges (non-POSIX?). Assuming non-root.")
    return is_root


def _build_collector_config(
    app_config: Dict[str, Any], overrides: Dict[str, Any]
) -> CollectorConfig:
    """Applies CLI flags (None = not given) over the [collector] section."""
    section = dict(app_config.get("collector", {}))
    section.update({k: v for k, v in overrides.items() if v is not None})
    return CollectorConfig.from_mapping(section)


def _load_collector_config(config_file: Optional[Path], overrides: Dict[str, Any]):
    try:
        app_config = load_config(config_path_override=config_file)
        collector_config = _build_collector_config(app_config, overrides)
    except ValueError as e:
        CONSOLE_ERR.print(f"[bold red]Error:[/bold red] Invalid configuration: {e}")
        raise typer.Exit(code=1)
    configure_procfs(collector_config.procfs_path)
    return app_config, collector_config


# --- Shared Options ---
CONFIG_OPTION = typer.Option(
    None,
    "--config",
    "-c",
    help="Path to a specific TOML configuration file to load.",
    exists=False,
    file_okay=True,
    dir_okay=False,
    readable=True,
)
WHITELIST_OPTION = typer.Option(
    None, "--unit-whitelist", help="Regexp of systemd units to include (full match)."
)
BLACKLIST_OPTION = typer.Option(
    None, "--unit-blacklist", help="Regexp of systemd units to exclude; wins over the whitelist."
)
PRIVATE_OPTION = typer.Option(
    None, "--private/--no-private", help="Connect to systemd's private socket instead of the system bus."
)
RESTARTS_OPTION = typer.Option(
    None, "--enable-restarts-metrics/--disable-restarts-metrics",
    help="Export systemd_service_restart_total (systemd 235+).",
)
FD_OPTION = typer.Option(
    None, "--enable-file-descriptor-size/--disable-file-descriptor-size",
    help="Export systemd_process_open_fds (walks /proc/<pid>/fd).",
)


config_app = typer.Typer(help="Manage systemd-exporter configuration.")
app.add_typer(config_app, name="config")


@config_app.command("show")
def config_show(config_file: Optional[Path] = CONFIG_OPTION):
    """Display the currently loaded configuration (merged from defaults and files)."""
    try:
        loaded_conf = load_config(config_path_override=config_file)
        conf_json = json.dumps(loaded_conf, indent=2, default=str)
        syntax = Syntax(conf_json, "json", theme="default", line_numbers=True)
        CONSOLE.print(Panel(syntax, title="Loaded Configuration", border_style="blue"))
    except Exception as e:
        log.exception("Failed to load or display configuration.")
        CONSOLE_ERR.print(
            f"[bold red]Error:[/bold red] Failed to load or display configuration: {e}"
        )
        raise typer.Exit(code=1)


@app.command()
def serve(
    host: Optional[str] = typer.Option(
        None, "--host", help="The host address to bind the Prometheus exporter to."
    ),
    port: Optional[int] = typer.Option(
        None, "--port", "-p", help="The port to expose the Prometheus exporter on."
    ),
    interval: Optional[int] = typer.Option(
        None,
        "--interval",
        "-i",
        help="Seconds between background collections; 0 collects on every scrape.",
    ),
    config_file: Optional[Path] = CONFIG_OPTION,
    unit_whitelist: Optional[str] = WHITELIST_OPTION,
    unit_blacklist: Optional[str] = BLACKLIST_OPTION,
    private: Optional[bool] = PRIVATE_OPTION,
    enable_restart_count: Optional[bool] = RESTARTS_OPTION,
    enable_fd_count: Optional[bool] = FD_OPTION,
):
    """
    Run the Prometheus exporter.
    Starts a web server exposing per-unit systemd and cgroup metrics.
    """
    check_privileges(required_for="the systemd bus, cgroup and /proc access")
    app_config, collector_config = _load_collector_config(
        config_file,
        {
            "unit_whitelist": unit_whitelist,
            "unit_blacklist": unit_blacklist,
            "private": private,
            "enable_restart_count": enable_restart_count,
            "enable_fd_count": enable_fd_count,
        },
    )
    exporter_conf = app_config.get("exporter", {})
    host = host if host is not None else exporter_conf.get("host", "0.0.0.0")
    port = port if port is not None else exporter_conf.get("port", 9558)
    interval = interval if interval is not None else exporter_conf.get("interval", 0)

    if not bus_logic.HAS_DBUS:
        CONSOLE_ERR.print(
            "[bold red]Error:[/bold red] dbus-python is not installed."
        )
        CONSOLE_ERR.print(
            "Install with: [cyan]pip install 'systemd-exporter[dbus]'[/cyan]"
        )
        raise typer.Exit(code=1)

    try:
        log.info("Starting systemd-exporter...")
        collector = SystemdCollector(config=collector_config, interval=interval)
        REGISTRY.register(collector)

        if interval > 0:
            collection_thread = threading.Thread(
                target=collector.run_periodic_collection,
                name="SystemdPeriodicCollection",
                daemon=True,
            )
            collection_thread.start()

        start_http_server(port, addr=host)
        log.info(f"Exporter started. Listening on http://{host}:{port}")
        CONSOLE.print(
            f"✅ [bold green]Prometheus exporter is running on http://{host}:{port}[/bold green]"
        )
        CONSOLE.print("Press Ctrl+C to exit.")

        while True:
            time.sleep(1)

    except KeyboardInterrupt:
        log.info("Shutting down.")
    except OSError as e:
        log.exception(
            f"Failed to start exporter, likely a port conflict on {host}:{port}."
        )
        CONSOLE_ERR.print(f"[bold red]Error starting exporter:[/bold red] {e}")
        CONSOLE_ERR.print("Is another process already using that port?")
        raise typer.Exit(code=1)
    except Exception as e:
        log.exception("An unexpected error occurred in the exporter.")
        CONSOLE_ERR.print(f"[bold red]An unexpected error occurred:[/bold red] {e}")
        raise typer.Exit(code=1)


@app.command()
def collect(
    output: str = typer.Option(
        "rich", "--output", "-o", help="Output format: 'rich' or 'json'."
    ),
    config_file: Optional[Path] = CONFIG_OPTION,
    unit_whitelist: Optional[str] = WHITELIST_OPTION,
    unit_blacklist: Optional[str] = BLACKLIST_OPTION,
    private: Optional[bool] = PRIVATE_OPTION,
    enable_restart_count: Optional[bool] = RESTARTS_OPTION,
    enable_fd_count: Optional[bool] = FD_OPTION,
):
    """Run a single collection cycle and print the samples."""
    if output not in ("rich", "json"):
        CONSOLE_ERR.print(f"[bold red]Error:[/bold red] Unknown output format '{output}'.")
        raise typer.Exit(code=1)
    _app_config, collector_config = _load_collector_config(
        config_file,
        {
            "unit_whitelist": unit_whitelist,
            "unit_blacklist": unit_blacklist,
            "private": private,
            "enable_restart_count": enable_restart_count,
            "enable_fd_count": enable_fd_count,
        },
    )
    try:
        samples = collect_cycle(collector_config)
    except Exception as e:
        log.exception(f"An unexpected error occurred: {e}")
        raise typer.Exit(code=1)

    if output == "json":
        print(format_json_samples(samples))
    else:
        format_samples_table(samples, CONSOLE)
    if not samples:
        raise typer.Exit(code=1)


@app.command()
def metrics():
    """List every metric the exporter can produce."""
    format_metric_catalogue(CONSOLE)


if __name__ == "__main__":
    app()
