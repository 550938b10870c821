"""
Routine Engine - Executes user-authored plugin graphs.

A routine is a directed graph of plugin nodes joined by flow connections
(which node runs next) and data connections (what it receives). The engine
validates the graph, then runs it in waves of concurrently ready nodes with
conditional branching and bounded loops.

Quick start:
    from routine_engine import PluginRegistry, RoutineExecutor, RoutineSpec

    registry = PluginRegistry()

    @registry.plugin("static-data")
    def static_data(config, inputs, context):
        return config.get("data", {})

    result = await RoutineExecutor(registry).execute(RoutineSpec.model_validate(payload))
"""

from routine_engine.config import EngineConfig
from routine_engine.errors import (
    DeadlockError,
    EngineError,
    ExecutionLimitError,
    GraphValidationError,
    NodeExecutionError,
    PluginNotFoundError,
)
from routine_engine.graph import (
    DataConnection,
    ExecutionGraph,
    FlowConnection,
    GraphValidator,
    LoopConfig,
    RoutineNode,
    RoutineSpec,
    build_graph,
    validate_graph,
)
from routine_engine.runtime import (
    ExecutionState,
    NodeExecutionResult,
    PluginExecutionContext,
    PluginRegistry,
    PluginResult,
    WavefrontScheduler,
    plugin,
)
from routine_engine.runtime.routine_executor import ExecutionResult, RoutineExecutor
from routine_engine.storage import FileExecutionSink, InMemoryExecutionSink

__all__ = [
    "DataConnection",
    "DeadlockError",
    "EngineConfig",
    "EngineError",
    "ExecutionGraph",
    "ExecutionLimitError",
    "ExecutionResult",
    "ExecutionState",
    "FileExecutionSink",
    "FlowConnection",
    "GraphValidationError",
    "GraphValidator",
    "InMemoryExecutionSink",
    "LoopConfig",
    "NodeExecutionError",
    "NodeExecutionResult",
    "PluginExecutionContext",
    "PluginNotFoundError",
    "PluginRegistry",
    "PluginResult",
    "RoutineExecutor",
    "RoutineNode",
    "RoutineSpec",
    "WavefrontScheduler",
    "build_graph",
    "plugin",
    "validate_graph",
]
