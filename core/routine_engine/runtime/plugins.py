"""Plugin capability interface and registry.

The engine never looks inside a plugin. It calls

    execute(plugin_id, config, inputs, context) -> {signal?, data}

through a NodeExecutor. PluginRegistry is the in-process implementation:
plugin functions are looked up by id, and synchronous ones are moved to a
worker thread so a wave's siblings still run concurrently.
"""

import asyncio
import importlib.util
import inspect
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from pydantic import BaseModel, Field

from routine_engine.errors import PluginNotFoundError

logger = logging.getLogger(__name__)


def _no_heartbeat(*details: Any) -> None:
    return None


@dataclass
class PluginExecutionContext:
    """What a plugin knows about the run it is part of."""

    user_id: str
    routine_id: str
    execution_id: str
    node_id: str
    trigger_data: Any = None
    run_index: int = 0
    loop_iteration: int | None = None
    loop_accumulator: dict[str, Any] | None = None
    # Live per-node scratch state; survives loop iterations within the run
    node_state: dict[str, Any] = field(default_factory=dict)
    heartbeat: Callable[..., None] = _no_heartbeat


class PluginResult(BaseModel):
    """
    Normalized plugin return value.

    Plugins may return a PluginResult, a ``{"signal": ..., "data": ...}``
    dict, a bare output dict, or None.

    A dict is read as the signal/data wrapper only when it carries a
    ``signal`` (with at most a ``data`` key besides), or when ``data`` is its
    only key and holds a dict. ``{"data": [1, 2]}`` is a bare output with a
    ``data`` port; return a PluginResult to be explicit.
    """

    signal: str | None = None
    data: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def coerce(cls, value: Any) -> "PluginResult":
        if isinstance(value, PluginResult):
            return value
        if value is None:
            return cls()
        if isinstance(value, dict):
            if _is_wrapper(value):
                data = value.get("data", {})
                if not isinstance(data, dict):
                    data = {"result": data}
                return cls(signal=value.get("signal"), data=data)
            return cls(data=dict(value))
        return cls(data={"result": value})


def _is_wrapper(value: dict[str, Any]) -> bool:
    keys = set(value)
    if "signal" in keys:
        return keys <= {"signal", "data"} and isinstance(value["signal"], str)
    return keys == {"data"} and isinstance(value["data"], dict)


PluginFunction = Callable[[dict[str, Any], dict[str, Any], PluginExecutionContext], Any]


@runtime_checkable
class NodeExecutor(Protocol):
    """Capability interface the engine uses to run a node's plugin."""

    async def execute(
        self,
        plugin_id: str,
        config: dict[str, Any],
        inputs: dict[str, Any],
        context: PluginExecutionContext,
    ) -> Any: ...


@dataclass
class RegisteredPlugin:
    """A plugin id with its implementation."""

    plugin_id: str
    func: PluginFunction
    description: str = ""


class PluginRegistry:
    """
    Looks up plugins by id and invokes them.

    Usage:
        registry = PluginRegistry()

        @registry.plugin("static-data")
        def static_data(config, inputs, context):
            return config.get("data", {})

        result = await registry.execute("static-data", {"data": {"x": 1}}, {}, ctx)
    """

    def __init__(self):
        self._plugins: dict[str, RegisteredPlugin] = {}

    def register(self, plugin_id: str, func: PluginFunction, description: str = "") -> None:
        if plugin_id in self._plugins:
            logger.warning("Plugin '%s' registered twice; keeping the latest", plugin_id)
        self._plugins[plugin_id] = RegisteredPlugin(
            plugin_id=plugin_id,
            func=func,
            description=description or (func.__doc__ or "").strip(),
        )

    def plugin(self, plugin_id: str | None = None, description: str = "") -> Callable:
        """Decorator form of register()."""

        def decorator(func: PluginFunction) -> PluginFunction:
            self.register(plugin_id or func.__name__, func, description)
            return func

        return decorator

    def has(self, plugin_id: str) -> bool:
        return plugin_id in self._plugins

    @property
    def plugin_ids(self) -> list[str]:
        return sorted(self._plugins)

    def resolve(self, plugin_id: str) -> RegisteredPlugin:
        try:
            return self._plugins[plugin_id]
        except KeyError:
            raise PluginNotFoundError(plugin_id) from None

    async def execute(
        self,
        plugin_id: str,
        config: dict[str, Any],
        inputs: dict[str, Any],
        context: PluginExecutionContext,
    ) -> PluginResult:
        registered = self.resolve(plugin_id)
        func = registered.func
        if inspect.iscoroutinefunction(func):
            value = await func(config, inputs, context)
        else:
            value = await asyncio.to_thread(func, config, inputs, context)
            if inspect.isawaitable(value):
                value = await value
        return PluginResult.coerce(value)

    def discover_from_module(self, module_path: Path) -> int:
        """
        Load plugins from a Python file.

        Looks for:
        - PLUGINS: dict[str, callable]
        - Functions decorated with @plugin

        Returns:
            Number of plugins registered
        """
        if not module_path.exists():
            return 0

        spec = importlib.util.spec_from_file_location(module_path.stem, module_path)
        if spec is None or spec.loader is None:
            return 0
        module = importlib.util.module_from_spec(spec)
        spec.loader.exec_module(module)
        return self.register_module(module)

    def register_module(self, module: Any) -> int:
        count = 0
        for plugin_id, func in getattr(module, "PLUGINS", {}).items():
            self.register(plugin_id, func)
            count += 1

        for name in dir(module):
            obj = getattr(module, name)
            if callable(obj) and hasattr(obj, "_plugin_metadata"):
                metadata = obj._plugin_metadata
                self.register(metadata["plugin_id"], obj, metadata.get("description") or "")
                count += 1
        return count


def plugin(plugin_id: str | None = None, description: str | None = None) -> Callable:
    """
    Decorator to mark a module-level function as a plugin.

    Usage:
        @plugin("if-else")
        def if_else(config, inputs, context):
            return {"signal": "true" if inputs.get("value") else "false", "data": inputs}
    """

    def decorator(func: Callable) -> Callable:
        func._plugin_metadata = {
            "plugin_id": plugin_id or func.__name__,
            "description": description or func.__doc__,
        }
        return func

    return decorator
