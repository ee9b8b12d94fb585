# Task board: configuration
# Override settings via taskboard.yaml or environment variables.

import os
import yaml
from pathlib import Path
from dataclasses import dataclass, fields
from typing import Optional

from .errors import ConfigError

CONFIG_PATH = Path("taskboard.yaml")


@dataclass
class Config:
    """Runtime configuration for the task board service and clients."""

    # Storage
    db_path: str = "~/.local/share/taskboard/taskboard.db"

    # Activity trail
    activity_limit: int = 50
    activity_poll_interval: float = 5.0  # seconds; 0 disables polling

    # Realtime
    subscribe_attempts: int = 3

    # Move protocol: extra attempts on transient store failures
    move_retries: int = 1

    # HTTP API
    host: str = "127.0.0.1"
    port: int = 3000
    log_level: str = "INFO"

    def resolve_paths(self):
        """Expand ~ in paths."""
        self.db_path = str(Path(self.db_path).expanduser())

    def validate(self):
        if self.activity_limit <= 0:
            raise ConfigError(f"activity_limit must be positive, got {self.activity_limit}")
        if self.activity_poll_interval < 0:
            raise ConfigError(f"activity_poll_interval cannot be negative, got {self.activity_poll_interval}")
        if self.subscribe_attempts < 1:
            raise ConfigError(f"subscribe_attempts must be at least 1, got {self.subscribe_attempts}")
        if self.move_retries < 0:
            raise ConfigError(f"move_retries cannot be negative, got {self.move_retries}")
        if not 0 < self.port < 65536:
            raise ConfigError(f"port out of range: {self.port}")

    @classmethod
    def load(cls, path: Optional[str] = None) -> "Config":
        """Load config from YAML file, falling back to defaults."""
        path = path or os.environ.get("TASKBOARD_CONFIG")
        cfg_path = Path(path) if path else CONFIG_PATH
        data = {}
        if cfg_path.exists():
            try:
                with open(cfg_path, "r") as f:
                    data = yaml.safe_load(f) or {}
            except yaml.YAMLError as e:
                raise ConfigError(f"Invalid YAML in {cfg_path}: {e}")
            if not isinstance(data, dict):
                raise ConfigError(f"{cfg_path} must contain a mapping")
        known = {f.name: f.type for f in fields(cls)}
        kwargs = {}
        for key, value in data.items():
            if key not in known:
                continue
            try:
                kwargs[key] = _coerce(known[key], value)
            except (TypeError, ValueError):
                raise ConfigError(f"Invalid value for {key}: {value!r}")
        cfg = cls(**kwargs)
        if os.environ.get("TASKBOARD_DB"):
            cfg.db_path = os.environ["TASKBOARD_DB"]
        cfg.resolve_paths()
        cfg.validate()
        return cfg


def _coerce(type_name, value):
    # dataclass field types are plain classes here
    if type_name in (int, "int"):
        return int(value)
    if type_name in (float, "float"):
        return float(value)
    return str(value)
