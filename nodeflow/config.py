"""Engine configuration.

Loaded from ``.nodeflow/config.yaml`` with ``NODEFLOW_*`` environment
variables taking precedence over the file.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import pydantic
import yaml
from pydantic import BaseModel, Field, field_validator
from rich.logging import RichHandler

from nodeflow.core.errors import ConfigError
from nodeflow.core.graph_schema import DEFAULT_TIMEOUT_MS

CONFIG_DIR = ".nodeflow"
CONFIG_FILE = "config.yaml"

ENV_OVERRIDES = {
    "NODEFLOW_DB_PATH": "db_path",
    "NODEFLOW_WORKERS": "worker_pool_size",
    "NODEFLOW_DEFAULT_TIMEOUT_MS": "default_timeout_ms",
    "NODEFLOW_HEARTBEAT_SECONDS": "heartbeat_interval",
    "NODEFLOW_LOG_LEVEL": "log_level",
}

DEFAULT_CONFIG_YAML = """# nodeflow engine configuration
# Environment variables NODEFLOW_DB_PATH, NODEFLOW_WORKERS,
# NODEFLOW_DEFAULT_TIMEOUT_MS, NODEFLOW_HEARTBEAT_SECONDS and
# NODEFLOW_LOG_LEVEL override the values below.

db_path: .nodeflow/state.db

# Background workers started by `nodeflow worker` and `nodeflow serve`
worker_pool_size: 4

# Per-node time budget when neither the node nor the workflow sets one
default_timeout_ms: 30000

# Seconds of silence before a live event stream sends a ping
heartbeat_interval: 15

# How often the trigger scheduler checks for due schedules (seconds)
trigger_poll_interval: 1

log_level: INFO
"""


class EngineConfig(BaseModel):
    """Process-wide engine settings."""

    db_path: Path = Path(CONFIG_DIR) / "state.db"
    worker_pool_size: int = Field(default=4, ge=1)
    default_timeout_ms: int = Field(default=DEFAULT_TIMEOUT_MS, gt=0)
    heartbeat_interval: float = Field(default=15.0, gt=0)
    trigger_poll_interval: float = Field(default=1.0, gt=0)
    log_level: str = "INFO"

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        level = v.upper()
        if level not in logging.getLevelNamesMapping():
            raise ValueError(f"Unknown log level: {v}")
        return level


def load_config(
    root: Path | None = None,
    config_path: Path | None = None,
    environ: Mapping[str, str] | None = None,
) -> EngineConfig:
    """Load configuration for a project directory.

    A missing config file yields defaults. Relative ``db_path`` values are
    resolved against ``root``.

    Raises:
        ConfigError: Unreadable YAML or invalid values.
    """
    root = Path(root or Path.cwd())
    config_path = config_path or root / CONFIG_DIR / CONFIG_FILE
    environ = os.environ if environ is None else environ

    data: dict[str, Any] = {}
    if config_path.exists():
        try:
            with open(config_path) as f:
                loaded = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in {config_path}: {e}") from e
        if loaded is not None and not isinstance(loaded, dict):
            raise ConfigError(
                f"Expected a mapping in {config_path}, got {type(loaded).__name__}"
            )
        data.update(loaded or {})

    for var, field_name in ENV_OVERRIDES.items():
        if environ.get(var):
            data[field_name] = environ[var]

    try:
        config = EngineConfig(**data)
    except pydantic.ValidationError as e:
        details = "; ".join(
            f"{'.'.join(str(x) for x in err['loc'])}: {err['msg']}" for err in e.errors()
        )
        raise ConfigError(f"Invalid configuration: {details}") from e

    if not config.db_path.is_absolute():
        config.db_path = root / config.db_path
    return config


def write_default_config(root: Path) -> Path:
    """Create ``.nodeflow/config.yaml`` under ``root`` if it does not exist."""
    config_path = root / CONFIG_DIR / CONFIG_FILE
    config_path.parent.mkdir(parents=True, exist_ok=True)
    if not config_path.exists():
        config_path.write_text(DEFAULT_CONFIG_YAML)
    return config_path


def configure_logging(level: str = "INFO") -> None:
    """Route log records through rich. For CLI entry points only."""
    logging.basicConfig(
        level=level.upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(rich_tracebacks=True, show_path=False)],
        force=True,
    )
