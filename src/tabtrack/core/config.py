from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml


@dataclass(frozen=True)
class RunConfig:
    run_id: str
    seed: int
    start_date: str


@dataclass(frozen=True)
class StorageConfig:
    duckdb_path: str
    clean_slate: bool = True
    # simulated round-trip to the hosted database
    latency_s: float = 0.05
    failure_rate: float = 0.0


@dataclass(frozen=True)
class LoggingConfig:
    level: str = "INFO"
    debug: bool = False


@dataclass(frozen=True)
class TelemetryConfig:
    run: RunConfig
    storage: StorageConfig
    logging: LoggingConfig
    raw: dict[str, Any]  # original parsed YAML; feature sections are read from here


def load_yaml(path: str | Path) -> dict[str, Any]:
    p = Path(path)
    data = yaml.safe_load(p.read_text())
    if not isinstance(data, dict):
        raise ValueError("Config YAML must parse to a dict at the top level.")
    return data


def section(data: dict[str, Any], key: str) -> dict[str, Any]:
    """Optional mapping section; missing or null gives {}."""
    value = data.get(key)
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise TypeError(f"Config section '{key}' must be a mapping/dict")
    return value


def parse_config(data: dict[str, Any]) -> TelemetryConfig:
    for key in ["run", "storage", "logging"]:
        if key not in data:
            raise ValueError(f"Missing required top-level config section: '{key}'")

    run = section(data, "run")
    storage = section(data, "storage")
    logging_cfg = section(data, "logging")

    run_cfg = RunConfig(
        run_id=str(run.get("run_id", "auto")),
        seed=int(run["seed"]),
        start_date=str(run["start_date"]),
    )

    failure_rate = float(storage.get("failure_rate", 0.0))
    if not (0.0 <= failure_rate <= 1.0):
        raise ValueError("storage.failure_rate must be in [0, 1]")
    latency_s = float(storage.get("latency_s", 0.05))
    if latency_s < 0:
        raise ValueError("storage.latency_s must be >= 0")

    storage_cfg = StorageConfig(
        duckdb_path=str(storage["duckdb_path"]),
        clean_slate=bool(storage.get("clean_slate", True)),
        latency_s=latency_s,
        failure_rate=failure_rate,
    )

    log_cfg = LoggingConfig(
        level=str(logging_cfg.get("level", "INFO")).upper(),
        debug=bool(logging_cfg.get("debug", False)),
    )

    return TelemetryConfig(run=run_cfg, storage=storage_cfg, logging=log_cfg, raw=data)


def load_config(path: str | Path) -> TelemetryConfig:
    data = load_yaml(path)
    return parse_config(data)
