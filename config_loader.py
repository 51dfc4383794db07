"""Configuration loading utilities for the worker lookup service."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


@dataclass(frozen=True)
class AppConfig:
    """Application configuration loaded from YAML."""

    workers_file: Path
    host: str = "127.0.0.1"
    port: int = 8000
    cache_capacity: int = 500
    cache_ttl_seconds: float = 120.0
    cache_sweep_seconds: float = 60.0
    debounce_delay_ms: int = 300
    max_results: int = 10
    store_timeout_seconds: float = 5.0
    metrics_capacity: int = 1000
    api_slow_threshold_ms: float = 1000.0
    store_slow_threshold_ms: float = 500.0
    log_level: str = "INFO"


def _read_int(raw: dict[str, Any], key: str, default: int, low: int, high: int) -> int:
    value = raw.get(key, default)
    if not isinstance(value, int) or isinstance(value, bool) or not (low <= value <= high):
        raise ValueError(f"'{key}' must be an integer between {low} and {high}")
    return value


def _read_number(raw: dict[str, Any], key: str, default: float, low: float, high: float) -> float:
    value = raw.get(key, default)
    if not isinstance(value, (int, float)) or isinstance(value, bool) or not (low <= value <= high):
        raise ValueError(f"'{key}' must be a number between {low:g} and {high:g}")
    return float(value)


def load_config(config_path: Path) -> AppConfig:
    """Load and validate configuration from a YAML file."""
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    with config_path.open("r", encoding="utf-8") as file:
        raw: dict[str, Any] = yaml.safe_load(file) or {}

    workers_file_raw = raw.get("workers_file")
    if not isinstance(workers_file_raw, str) or not workers_file_raw.strip():
        raise ValueError("'workers_file' must be a non-empty string in config.yml")

    workers_file = Path(workers_file_raw)
    if not workers_file.is_absolute():
        workers_file = (config_path.parent / workers_file).resolve()

    host = raw.get("host", "127.0.0.1")
    if not isinstance(host, str) or not host:
        raise ValueError("'host' must be a non-empty string")

    log_level = raw.get("log_level", "INFO")
    if not isinstance(log_level, str) or log_level.upper() not in LOG_LEVELS:
        raise ValueError(f"'log_level' must be one of {', '.join(LOG_LEVELS)}")

    return AppConfig(
        workers_file=workers_file,
        host=host,
        port=_read_int(raw, "port", 8000, 1, 65535),
        cache_capacity=_read_int(raw, "cache_capacity", 500, 1, 100_000),
        cache_ttl_seconds=_read_number(raw, "cache_ttl_seconds", 120, 1, 3600),
        cache_sweep_seconds=_read_number(raw, "cache_sweep_seconds", 60, 0, 86_400),
        debounce_delay_ms=_read_int(raw, "debounce_delay_ms", 300, 0, 10_000),
        max_results=_read_int(raw, "max_results", 10, 1, 50),
        store_timeout_seconds=_read_number(raw, "store_timeout_seconds", 5, 0.1, 300),
        metrics_capacity=_read_int(raw, "metrics_capacity", 1000, 1, 1_000_000),
        api_slow_threshold_ms=_read_number(raw, "api_slow_threshold_ms", 1000, 1, 600_000),
        store_slow_threshold_ms=_read_number(raw, "store_slow_threshold_ms", 500, 1, 600_000),
        log_level=log_level.upper(),
    )
