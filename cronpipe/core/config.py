"""
cronpipe Configuration — loads and merges config from multiple sources.

Precedence (highest to lowest):
1. Explicit overrides (passed in code)
2. Environment variables (CRONPIPE_*)
3. Project config (./cronpipe.toml)
4. User config (~/.cronpipe/config.toml)
5. Defaults (hardcoded)

Environment variable mapping:
    CRONPIPE_STORE_BACKEND → store.backend
    CRONPIPE_STORE_DSN → store.dsn
    CRONPIPE_SCHEDULER_BATCH_SIZE → scheduler.batch_size
    CRONPIPE_EXECUTOR_DEFAULT_TIMEOUT_MS → executor.default_timeout_ms
    ... (see _ENV_MAPPING)
"""

from __future__ import annotations

import os
import re
import tomllib
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, Field

from cronpipe.core.errors import ConfigError

# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Config Sub-Models
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class StoreConfig(BaseModel):
    """Scheduling store configuration."""

    backend: Literal["sqlite", "postgres"] = "sqlite"
    path: str = "~/.cronpipe/cronpipe.db"
    dsn: str = ""
    busy_timeout: float = 30.0  # seconds a writer waits for the db lock


class SchedulerConfig(BaseModel):
    """Scheduler poll loop configuration."""

    enabled: bool = True
    batch_size: int = Field(default=50, ge=1)
    poll_interval: float = Field(default=10.0, gt=0)  # seconds


class DispatcherConfig(BaseModel):
    """Dispatcher poll loop configuration."""

    enabled: bool = True
    batch_size: int = Field(default=50, ge=1)
    poll_interval: float = Field(default=5.0, gt=0)
    backoff_base_seconds: float = Field(default=5.0, ge=0)
    reconcile_interval: float = Field(default=60.0, gt=0)
    reconcile_after_seconds: float = Field(default=300.0, gt=0)


class ExecutorConfig(BaseModel):
    """Worker configuration."""

    enabled: bool = True
    default_timeout_ms: int = Field(default=15000, ge=1)
    excerpt_limit: int = Field(default=2000, ge=0)
    concurrency: int = Field(default=4, ge=1)
    consume_timeout: float = Field(default=1.0, gt=0)


class QueueConfig(BaseModel):
    """Work queue configuration."""

    backend: Literal["sqlite", "memory"] = "sqlite"
    path: str = "~/.cronpipe/queue.db"
    visibility_timeout: float = Field(default=300.0, gt=0)
    keep_done: int = Field(default=100, ge=0)  # finished tasks kept for inspection
    keep_dead: int = Field(default=500, ge=0)


class LoggingConfig(BaseModel):
    """Log output configuration."""

    dir: str = "~/.cronpipe/logs"
    console_level: str = "WARNING"
    events: bool = True


class AlertsConfig(BaseModel):
    """Where operational alerts go besides the log."""

    enabled: bool = True
    file: str = "alerts.log"  # relative to logging.dir
    webhook_url: str | None = None


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Main Config
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class CronPipeConfig(BaseModel):
    """Root configuration for cronpipe."""

    store: StoreConfig = Field(default_factory=StoreConfig)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    dispatcher: DispatcherConfig = Field(default_factory=DispatcherConfig)
    executor: ExecutorConfig = Field(default_factory=ExecutorConfig)
    queue: QueueConfig = Field(default_factory=QueueConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    alerts: AlertsConfig = Field(default_factory=AlertsConfig)

    @staticmethod
    def load(
        overrides: dict[str, Any] | None = None,
        project_path: Path | None = None,
        user_path: Path | None = None,
    ) -> CronPipeConfig:
        """
        Load configuration from all sources and merge.

        Precedence: overrides > env vars > project toml > user toml > defaults
        """
        merged: dict[str, Any] = {}

        # Layer 1: User config (~/.cronpipe/config.toml)
        user_config_path = user_path or Path.home() / ".cronpipe" / "config.toml"
        if user_config_path.exists():
            _deep_merge(merged, _load_toml(user_config_path))

        # Layer 2: Project config (./cronpipe.toml)
        project_config_path = project_path or Path.cwd() / "cronpipe.toml"
        if project_config_path.exists():
            _deep_merge(merged, _load_toml(project_config_path))

        # Layer 3: Environment variables
        _deep_merge(merged, _load_from_env())

        # Layer 4: Explicit overrides
        if overrides:
            _deep_merge(merged, overrides)

        _substitute_env_vars(merged)

        try:
            return CronPipeConfig(**merged)
        except Exception as e:
            raise ConfigError(f"Invalid configuration: {e}") from e

    def get_home(self) -> Path:
        """Get the cronpipe home directory (~/.cronpipe)."""
        return Path(self.store.path).expanduser().parent

    def get_log_dir(self) -> Path:
        return Path(self.logging.dir).expanduser()


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Internal Helpers
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━

_ENV_MAPPING = {
    "CRONPIPE_STORE_BACKEND": ("store", "backend"),
    "CRONPIPE_STORE_PATH": ("store", "path"),
    "CRONPIPE_STORE_DSN": ("store", "dsn"),
    "CRONPIPE_SCHEDULER_BATCH_SIZE": ("scheduler", "batch_size"),
    "CRONPIPE_SCHEDULER_POLL_INTERVAL": ("scheduler", "poll_interval"),
    "CRONPIPE_DISPATCHER_BATCH_SIZE": ("dispatcher", "batch_size"),
    "CRONPIPE_DISPATCHER_POLL_INTERVAL": ("dispatcher", "poll_interval"),
    "CRONPIPE_DISPATCHER_BACKOFF_BASE_SECONDS": ("dispatcher", "backoff_base_seconds"),
    "CRONPIPE_EXECUTOR_DEFAULT_TIMEOUT_MS": ("executor", "default_timeout_ms"),
    "CRONPIPE_EXECUTOR_EXCERPT_LIMIT": ("executor", "excerpt_limit"),
    "CRONPIPE_EXECUTOR_CONCURRENCY": ("executor", "concurrency"),
    "CRONPIPE_QUEUE_BACKEND": ("queue", "backend"),
    "CRONPIPE_QUEUE_PATH": ("queue", "path"),
    "CRONPIPE_QUEUE_KEEP_DONE": ("queue", "keep_done"),
    "CRONPIPE_QUEUE_KEEP_DEAD": ("queue", "keep_dead"),
    "CRONPIPE_LOG_DIR": ("logging", "dir"),
    "CRONPIPE_LOG_LEVEL": ("logging", "console_level"),
    "CRONPIPE_ALERTS_ENABLED": ("alerts", "enabled"),
    "CRONPIPE_ALERTS_WEBHOOK_URL": ("alerts", "webhook_url"),
}


def _load_toml(path: Path) -> dict[str, Any]:
    """Load a TOML file."""
    try:
        with open(path, "rb") as f:
            return tomllib.load(f)
    except Exception as e:
        raise ConfigError(f"Failed to load config from {path}: {e}") from e


def _load_from_env() -> dict[str, Any]:
    """Load configuration from CRONPIPE_* environment variables."""
    result: dict[str, Any] = {}

    for env_var, (section, key) in _ENV_MAPPING.items():
        value = os.environ.get(env_var)
        if value is not None:
            result.setdefault(section, {})[key] = _convert_value(value)

    return result


def _convert_value(value: str) -> Any:
    """Convert string value to appropriate type."""
    if value.lower() in ("true", "yes"):
        return True
    if value.lower() in ("false", "no"):
        return False
    try:
        return int(value)
    except ValueError:
        pass
    try:
        return float(value)
    except ValueError:
        pass
    return value


def _deep_merge(base: dict, override: dict) -> None:
    """Deep merge override into base (mutates base)."""
    for key, value in override.items():
        if key in base and isinstance(base[key], dict) and isinstance(value, dict):
            _deep_merge(base[key], value)
        else:
            base[key] = value


def _substitute_env_vars(data: dict) -> None:
    """Recursively substitute ${ENV_VAR} patterns in string values."""
    pattern = re.compile(r"\$\{([^}]+)\}")

    def _sub(text: str) -> str:
        for var_name in pattern.findall(text):
            text = text.replace(f"${{{var_name}}}", os.environ.get(var_name, ""))
        return text

    for key, value in data.items():
        if isinstance(value, dict):
            _substitute_env_vars(value)
        elif isinstance(value, str):
            data[key] = _sub(value)
        elif isinstance(value, list):
            data[key] = [_sub(item) if isinstance(item, str) else item for item in value]
