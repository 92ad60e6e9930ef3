# src/systemd_exporter/config.py
# -*- coding: utf-8 -*-
import copy
import logging
import os
import re
import sys
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Optional, Dict, Any, List, Pattern

# Use tomllib if available (Python 3.11+), otherwise fall back to tomli
if sys.version_info >= (3, 11):
    import tomllib
else:
    try:
        import tomli as tomllib
    except ImportError:
        tomllib = None # type: ignore

log_cfg = logging.getLogger(__name__)

# Default configuration values
DEFAULT_CONFIG: Dict[str, Any] = {
    "collector": {
        "unit_whitelist": r".+",
        "unit_blacklist": r".+\.(device)",
        "private": False,
        "procfs_path": "/proc",
        "cgroupfs_path": "/sys/fs/cgroup",
        "enable_restart_count": False,
        "enable_fd_count": False,
        "max_workers": 0,
        "cycle_timeout": 0,
    },
    "exporter": {
        "host": "0.0.0.0",
        "port": 9558,
        "interval": 0,
    },
}

# Default configuration file search paths
DEFAULT_CONFIG_FILES: List[Path] = [
    Path("/etc/systemd-exporter/config.toml"),
    Path(os.path.expanduser("~/.config/systemd-exporter/config.toml")),
]

def _merge_configs(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """Recursively merges override dict into base dict."""
    merged = base.copy()
    for key, value in override.items():
        if isinstance(value, dict) and key in merged and isinstance(merged[key], dict):
            merged[key] = _merge_configs(merged[key], value)
        else:
            merged[key] = value
    return merged

def load_config(config_path_override: Optional[Path] = None) -> Dict[str, Any]:
    """
    Loads configuration, merging defaults, system, user, and override files.

    Args:
        config_path_override: A specific config file path to load, bypassing
                              default search paths if provided.

    Returns:
        The final merged configuration dictionary.
    """
    config = copy.deepcopy(DEFAULT_CONFIG)

    if tomllib is None:
        log_cfg.warning(
            "TOML library (tomli for Python < 3.11) not found. "
            "Configuration file loading is disabled. Using defaults."
        )
        return config

    if config_path_override:
        if not config_path_override.is_file():
            log_cfg.error(f"Specified config file not found: {config_path_override}. Using defaults.")
            return config
        log_cfg.info(f"Using specified config file: {config_path_override}")
        files_to_load = [config_path_override]
    else:
        files_to_load = DEFAULT_CONFIG_FILES

    loaded_files_log: List[str] = []
    for config_file in files_to_load:
        if not config_path_override and not config_file.is_file():
            log_cfg.debug(f"Default configuration file not found, skipping: {config_file}")
            continue

        log_cfg.info(f"Loading configuration from: {config_file}")
        try:
            with open(config_file, "rb") as f:
                file_config = tomllib.load(f)
            config = _merge_configs(config, file_config)
            loaded_files_log.append(str(config_file))
        except tomllib.TOMLDecodeError as e:
            log_cfg.error(f"Error parsing configuration file {config_file}: {e}")
        except OSError as e:
            log_cfg.error(f"Error reading configuration file {config_file}: {e}")

    if loaded_files_log:
        log_cfg.info(f"Configuration loaded and merged from: {', '.join(loaded_files_log)}")
    elif not config_path_override:
        log_cfg.info("No default configuration files found. Using default settings.")

    log_cfg.debug(f"Final configuration loaded: {config}")
    return config


# --- Collector Settings ---
@dataclass(frozen=True)
class CollectorConfig:
    """Immutable collector settings, shared read-only by every unit task."""
    unit_whitelist: Pattern[str]
    unit_blacklist: Pattern[str]
    private: bool = False
    procfs_path: str = "/proc"
    cgroupfs_path: str = "/sys/fs/cgroup"
    enable_restart_count: bool = False
    enable_fd_count: bool = False
    max_workers: int = 0
    cycle_timeout: float = 0

    @property
    def timeout(self) -> Optional[float]:
        """cycle_timeout as a wait() timeout; None means wait forever."""
        return self.cycle_timeout if self.cycle_timeout > 0 else None

    @classmethod
    def from_mapping(cls, section: Dict[str, Any]) -> "CollectorConfig":
        """
        Builds a CollectorConfig from the [collector] section.

        Raises:
            ValueError: a value has the wrong type or a pattern does not compile.
        """
        known = {f.name for f in fields(cls)}
        merged = _merge_configs(DEFAULT_CONFIG["collector"], section)
        for key in list(merged):
            if key not in known:
                log_cfg.warning(f"Ignoring unknown collector setting: {key}")
                merged.pop(key)

        for key in ("private", "enable_restart_count", "enable_fd_count"):
            if not isinstance(merged[key], bool):
                raise ValueError(f"collector.{key} must be a boolean, got {merged[key]!r}")
        for key in ("procfs_path", "cgroupfs_path"):
            if not isinstance(merged[key], str) or not merged[key]:
                raise ValueError(f"collector.{key} must be a non-empty string")
        max_workers = merged["max_workers"]
        if isinstance(max_workers, bool) or not isinstance(max_workers, int) or max_workers < 0:
            raise ValueError(f"collector.max_workers must be a non-negative integer, got {max_workers!r}")
        cycle_timeout = merged["cycle_timeout"]
        if isinstance(cycle_timeout, bool) or not isinstance(cycle_timeout, (int, float)) or cycle_timeout < 0:
            raise ValueError(f"collector.cycle_timeout must be a non-negative number, got {cycle_timeout!r}")

        for key in ("unit_whitelist", "unit_blacklist"):
            try:
                merged[key] = re.compile(merged[key])
            except (re.error, TypeError) as e:
                raise ValueError(f"collector.{key} is not a valid regular expression: {e}") from e

        return cls(**merged)
