"""Shared engine configuration.

Centralises reading of ~/.flowcore/configuration.json so the engine, the
CLI and embedding applications share one implementation.
"""

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

# ---------------------------------------------------------------------------
# Low-level config file access
# ---------------------------------------------------------------------------

DEFAULT_CONFIG_FILE = Path.home() / ".flowcore" / "configuration.json"

DEFAULT_RETRY_DELAY_SECONDS = 60.0
DEFAULT_BACKOFF_MULTIPLIER = 2.0
DEFAULT_MAX_RETRIES = 0
DEFAULT_LOOP_MAX_ITERATIONS = 10
DEFAULT_MAX_CONCURRENT_HANDLERS = 32


def get_config_path() -> Path:
    """Return the configuration file path, honouring FLOWCORE_CONFIG."""
    override = os.environ.get("FLOWCORE_CONFIG")
    return Path(override) if override else DEFAULT_CONFIG_FILE


def get_flowcore_config() -> dict[str, Any]:
    """Load the engine configuration file. Missing or unreadable files yield {}."""
    path = get_config_path()
    if not path.exists():
        return {}
    try:
        with open(path, encoding="utf-8-sig") as f:
            return json.load(f)
    except (json.JSONDecodeError, OSError):
        return {}


# ---------------------------------------------------------------------------
# Derived helpers
# ---------------------------------------------------------------------------


def get_retry_defaults() -> dict[str, float]:
    """Return the default retry policy values used when a node declares none."""
    retry = get_flowcore_config().get("retry", {})
    return {
        "max_retries": int(retry.get("max_retries", DEFAULT_MAX_RETRIES)),
        "retry_delay": float(retry.get("retry_delay", DEFAULT_RETRY_DELAY_SECONDS)),
        "backoff_multiplier": float(retry.get("backoff_multiplier", DEFAULT_BACKOFF_MULTIPLIER)),
    }


def get_storage_path() -> Path | None:
    """Return the durable store location, FLOWCORE_STORAGE_PATH wins over the file."""
    env = os.environ.get("FLOWCORE_STORAGE_PATH")
    if env:
        return Path(env)
    configured = get_flowcore_config().get("storage", {}).get("path")
    return Path(configured).expanduser() if configured else None


def get_log_level() -> str:
    return os.environ.get(
        "FLOWCORE_LOG_LEVEL", get_flowcore_config().get("logging", {}).get("level", "INFO")
    )


def get_log_format() -> str:
    return get_flowcore_config().get("logging", {}).get("format", "auto")


# ---------------------------------------------------------------------------
# EngineConfig – shared by the engine and the CLI
# ---------------------------------------------------------------------------


@dataclass
class EngineConfig:
    """Engine configuration loaded from ~/.flowcore/configuration.json."""

    default_max_retries: int = field(default_factory=lambda: get_retry_defaults()["max_retries"])
    default_retry_delay: float = field(
        default_factory=lambda: get_retry_defaults()["retry_delay"]
    )
    default_backoff_multiplier: float = field(
        default_factory=lambda: get_retry_defaults()["backoff_multiplier"]
    )
    loop_max_iterations: int = field(
        default_factory=lambda: int(
            get_flowcore_config()
            .get("engine", {})
            .get("loop_max_iterations", DEFAULT_LOOP_MAX_ITERATIONS)
        )
    )
    max_concurrent_handlers: int = field(
        default_factory=lambda: int(
            get_flowcore_config()
            .get("engine", {})
            .get("max_concurrent_handlers", DEFAULT_MAX_CONCURRENT_HANDLERS)
        )
    )
    storage_path: Path | None = field(default_factory=get_storage_path)
    log_level: str = field(default_factory=get_log_level)
    log_format: str = field(default_factory=get_log_format)
