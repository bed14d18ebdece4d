"""Configuration loading and merging for Waypoint."""

from dataclasses import dataclass, fields
from pathlib import Path
from typing import Optional

import yaml


@dataclass
class WaypointConfig:
    # Registry HTTP API (also serves /config): bind address, and the
    # address clients use to reach it
    registry_bind: str = "0.0.0.0"
    registry_host: str = "localhost"
    registry_port: int = 8471

    # Health monitor
    monitor_interval: float = 10
    eviction_threshold: float = 30
    eviction_grace: float = 30

    # Configuration distributor
    config_history: int = 5
    config_log: Optional[str] = None

    # Registry client (embedded in services and in the gateway)
    heartbeat_interval: float = 5
    refresh_interval: float = 5
    stale_threshold: float = 30
    register_attempts: int = 5
    register_backoff: float = 0.5

    # Gateway
    gateway_bind: str = "0.0.0.0"
    gateway_port: int = 8080
    max_attempts: int = 3
    request_timeout: float = 10
    default_deadline: float = 30


def validate_config(config: WaypointConfig) -> None:
    """Raise ValueError if the settings cannot work together."""
    for name in ("monitor_interval", "eviction_threshold", "heartbeat_interval",
                 "refresh_interval", "stale_threshold", "request_timeout", "default_deadline"):
        if getattr(config, name) <= 0:
            raise ValueError(f"{name} must be positive")
    if config.eviction_grace < 0:
        raise ValueError("eviction_grace must not be negative")
    # At least three heartbeats per eviction window
    if config.heartbeat_interval >= config.eviction_threshold / 3:
        raise ValueError(
            f"heartbeat_interval ({config.heartbeat_interval:g}s) must be below"
            f" eviction_threshold / 3 ({config.eviction_threshold / 3:g}s)"
        )
    if config.config_history < 1:
        raise ValueError("config_history must be at least 1")
    if config.max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")
    if config.register_attempts < 1:
        raise ValueError("register_attempts must be at least 1")


def load_config(path: str | Path) -> WaypointConfig:
    """Load a WaypointConfig from a YAML file."""
    path = Path(path)
    with open(path) as f:
        data = yaml.safe_load(f) or {}

    valid_fields = {f.name for f in fields(WaypointConfig)}
    unknown = sorted(set(data) - valid_fields)
    if unknown:
        raise ValueError(f"unknown config keys in {path}: {', '.join(unknown)}")
    return WaypointConfig(**data)


def merge_cli_args(config: WaypointConfig, args) -> WaypointConfig:
    """Overlay CLI arguments onto an existing config. CLI values take precedence."""
    for f in fields(WaypointConfig):
        cli_val = getattr(args, f.name, None)
        if cli_val is not None:
            setattr(config, f.name, cli_val)
    return config


def config_to_yaml(config: WaypointConfig) -> str:
    """Serialize a WaypointConfig to YAML, omitting unset optional values."""
    data = {
        f.name: getattr(config, f.name)
        for f in fields(WaypointConfig)
        if getattr(config, f.name) is not None
    }
    return yaml.dump(data, default_flow_style=False, sort_keys=False)
