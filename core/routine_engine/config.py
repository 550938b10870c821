"""Routine engine configuration.

Reads ~/.routine_engine/configuration.json (or the file named by the
ROUTINE_ENGINE_CONFIG environment variable). A missing or unreadable file
means defaults everywhere.

Example configuration.json:

    {
      "scheduler": {"max_concurrent_nodes": 8, "max_node_executions": 5000},
      "activities": {
        "plugin": {"start_to_close_timeout": 120, "retry": {"maximum_attempts": 5}},
        "sink": {"start_to_close_timeout": 30}
      },
      "logging": {"level": "DEBUG", "format": "json"}
    }
"""

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from routine_engine.runtime.activity import ActivityPolicy

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Low-level config file access
# ---------------------------------------------------------------------------

ENGINE_CONFIG_FILE = Path.home() / ".routine_engine" / "configuration.json"

DEFAULT_MAX_CONCURRENT_NODES = 20
DEFAULT_MAX_NODE_EXECUTIONS = 10_000


def get_engine_config_file() -> Path:
    """Config file path, honoring ROUTINE_ENGINE_CONFIG."""
    override = os.environ.get("ROUTINE_ENGINE_CONFIG")
    return Path(override).expanduser() if override else ENGINE_CONFIG_FILE


def get_engine_config() -> dict[str, Any]:
    """Load the raw configuration dict."""
    path = get_engine_config_file()
    if not path.exists():
        return {}
    try:
        with open(path, encoding="utf-8-sig") as f:
            data = json.load(f)
    except (json.JSONDecodeError, OSError) as e:
        logger.warning(f"Ignoring unreadable config file {path}: {e}")
        return {}
    return data if isinstance(data, dict) else {}


# ---------------------------------------------------------------------------
# Derived helpers
# ---------------------------------------------------------------------------
#
# Each helper reads the file itself unless handed an already loaded config
# dict, so EngineConfig.load() can build every field from a single read.


def _section(name: str, config: dict[str, Any] | None = None) -> dict[str, Any]:
    source = get_engine_config() if config is None else config
    value = source.get(name)
    return value if isinstance(value, dict) else {}


def _positive_int(value: Any, default: int) -> int:
    if isinstance(value, int) and not isinstance(value, bool) and value > 0:
        return value
    return default


def get_max_concurrent_nodes(config: dict[str, Any] | None = None) -> int:
    """Cap on in-flight node executions within one wave."""
    value = _section("scheduler", config).get("max_concurrent_nodes")
    return _positive_int(value, DEFAULT_MAX_CONCURRENT_NODES)


def get_max_node_executions(config: dict[str, Any] | None = None) -> int:
    """Total node attempts allowed per run before it is failed."""
    value = _section("scheduler", config).get("max_node_executions")
    return _positive_int(value, DEFAULT_MAX_NODE_EXECUTIONS)


def get_activity_policy(kind: str = "plugin", config: dict[str, Any] | None = None) -> ActivityPolicy:
    """Timeout/retry policy for "plugin" or "sink" activities."""
    raw = _section("activities", config).get(kind) or {}
    try:
        return ActivityPolicy.model_validate(raw)
    except ValidationError as e:
        logger.warning(f"Invalid {kind} activity policy in config, using defaults: {e}")
        return ActivityPolicy()


def get_log_level(config: dict[str, Any] | None = None) -> str:
    return str(_section("logging", config).get("level", "INFO")).upper()


def get_log_format(config: dict[str, Any] | None = None) -> str:
    """Log format name: json, human or auto."""
    value = _section("logging", config).get("format", "auto")
    return value if value in ("json", "human", "auto") else "auto"


# ---------------------------------------------------------------------------
# EngineConfig
# ---------------------------------------------------------------------------


@dataclass
class EngineConfig:
    """
    Engine settings.

    ``EngineConfig()`` holds the built-in defaults; ``EngineConfig.load()``
    reads the configuration file once and fills every field from it.
    """

    max_concurrent_nodes: int = DEFAULT_MAX_CONCURRENT_NODES
    max_node_executions: int = DEFAULT_MAX_NODE_EXECUTIONS
    plugin_policy: ActivityPolicy = field(default_factory=ActivityPolicy)
    sink_policy: ActivityPolicy = field(default_factory=ActivityPolicy)
    log_level: str = "INFO"
    log_format: str = "auto"

    @classmethod
    def load(cls, **overrides: Any) -> "EngineConfig":
        """Settings from one read of the configuration file; keyword arguments win."""
        raw = get_engine_config()
        values: dict[str, Any] = {
            "max_concurrent_nodes": get_max_concurrent_nodes(raw),
            "max_node_executions": get_max_node_executions(raw),
            "plugin_policy": get_activity_policy("plugin", raw),
            "sink_policy": get_activity_policy("sink", raw),
            "log_level": get_log_level(raw),
            "log_format": get_log_format(raw),
        }
        values.update(overrides)
        return cls(**values)
