"""Runtime configuration registry.

Provides centralized settings for the worker, the external tracker, loop
defaults and on-disk locations. Environment variables take precedence over
YAML config.

Usage:
    from stepgate.config.runtime_config import get_worker_mode, get_default

    if get_worker_mode() == "stub":
        # Use the scripted worker
    retries = get_max_format_retries()
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

logger = logging.getLogger(__name__)

_CONFIG_PATH = Path(__file__).parent / "runtime.yaml"
_cached_config: Optional[Dict[str, Any]] = None

VALID_WORKER_MODES = ("cli", "stub")

# Sanity bounds for retry counts read from env/config
FORMAT_RETRIES_MIN = 0
FORMAT_RETRIES_MAX = 20


def _load_config() -> Dict[str, Any]:
    """Load runtime.yaml configuration, with caching."""
    global _cached_config
    if _cached_config is not None:
        return _cached_config

    if _CONFIG_PATH.exists():
        with open(_CONFIG_PATH, encoding="utf-8") as f:
            _cached_config = yaml.safe_load(f) or {}
    else:
        _cached_config = _default_config()

    return _cached_config


def _default_config() -> Dict[str, Any]:
    """Return default configuration if runtime.yaml doesn't exist."""
    return {
        "version": "1.0",
        "worker": {
            "mode": "cli",
            "command": "claude",
            "timeout_seconds": 1800,
            "model": None,
        },
        "defaults": {
            "max_iterations": 20,
            "max_format_retries": 3,
            "history_window": 5,
            "max_parallel_sessions": 4,
        },
        "tracker": {
            "command": "gh",
            "retries": 3,
            "base_delay": 1.0,
            "max_delay": 30.0,
            "timeout_seconds": 60,
        },
        "paths": {
            "agents_dir": ".agent",
            "sessions_dir": ".stepgate/sessions",
            "worktree_root": "../worktree",
        },
    }


def reset_config() -> None:
    """Reset cached config (for testing)."""
    global _cached_config
    _cached_config = None


def _section(name: str) -> Dict[str, Any]:
    return _load_config().get(name) or {}


def _env_int(var: str) -> Optional[int]:
    value = os.environ.get(var)
    if value is None or value == "":
        return None
    try:
        return int(value)
    except ValueError:
        logger.warning("Ignoring non-integer %s=%r", var, value)
        return None


def get_default(key: str, fallback: Any = None) -> Any:
    """Get a loop default.

    Args:
        key: Setting key (e.g., "max_iterations", "history_window").
        fallback: Value to return if key not found.

    Returns:
        Setting value or fallback.
    """
    return _section("defaults").get(key, fallback)


def get_worker_mode() -> str:
    """Get the worker mode, respecting environment variable overrides.

    Environment variable precedence (highest to lowest):
    1. STEPGATE_WORKER_MODE
    2. Config file value
    3. Default: "cli"

    Returns:
        "cli" or "stub". Logs a warning and returns "cli" for invalid values.
    """
    value = os.environ.get("STEPGATE_WORKER_MODE") or _section("worker").get("mode") or "cli"
    value = value.lower()
    if value not in VALID_WORKER_MODES:
        logger.warning(
            "Invalid worker mode '%s' (valid: %s). Falling back to 'cli'.",
            value,
            ", ".join(VALID_WORKER_MODES),
        )
        return "cli"
    return value


def get_worker_command() -> str:
    return os.environ.get("STEPGATE_WORKER_COMMAND") or _section("worker").get("command") or "claude"


def get_worker_model() -> Optional[str]:
    return os.environ.get("STEPGATE_WORKER_MODEL") or _section("worker").get("model")


def get_worker_timeout() -> int:
    """Get timeout for one worker invocation in seconds (default: 1800)."""
    env_value = _env_int("STEPGATE_WORKER_TIMEOUT")
    if env_value is not None and env_value > 0:
        return env_value
    return int(_section("worker").get("timeout_seconds", 1800))


def get_max_iterations() -> int:
    return int(get_default("max_iterations", 20))


def get_max_format_retries() -> int:
    """Get the bounded retry count for format and intent errors.

    Values outside [0, 20] are clamped with a warning.
    """
    value = _env_int("STEPGATE_MAX_FORMAT_RETRIES")
    if value is None:
        value = int(get_default("max_format_retries", 3))
    if value < FORMAT_RETRIES_MIN or value > FORMAT_RETRIES_MAX:
        clamped = min(max(value, FORMAT_RETRIES_MIN), FORMAT_RETRIES_MAX)
        logger.warning(
            "max_format_retries value %d is outside [%d, %d]. Clamping to %d.",
            value,
            FORMAT_RETRIES_MIN,
            FORMAT_RETRIES_MAX,
            clamped,
        )
        value = clamped
    return value


def get_history_window() -> int:
    return int(get_default("history_window", 5))


def get_max_parallel_sessions() -> int:
    return max(1, int(get_default("max_parallel_sessions", 4)))


def get_tracker_settings() -> Dict[str, Any]:
    """Get external tracker settings merged over defaults.

    Returns:
        Dict with command, retries, base_delay, max_delay, timeout_seconds.
    """
    settings = dict(_default_config()["tracker"])
    settings.update({k: v for k, v in _section("tracker").items() if v is not None})
    return settings


def _get_path(key: str, env_var: str) -> Path:
    value = os.environ.get(env_var) or _section("paths").get(key) or _default_config()["paths"][key]
    return Path(value)


def get_agents_dir() -> Path:
    return _get_path("agents_dir", "STEPGATE_AGENTS_DIR")


def get_sessions_dir() -> Path:
    return _get_path("sessions_dir", "STEPGATE_SESSIONS_DIR")


def get_worktree_root() -> Path:
    return _get_path("worktree_root", "STEPGATE_WORKTREE_ROOT")
