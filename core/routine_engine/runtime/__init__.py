"""Runtime: execution state, loops, plugins and the wavefront scheduler."""

from routine_engine.runtime.activity import (
    ActivityFailure,
    ActivityPolicy,
    ActivityRunner,
    DirectActivityRunner,
    RetryPolicy,
    unwrap_error,
)
from routine_engine.runtime.execution_state import (
    ExecutionState,
    NodeExecutionResult,
    NodeStatus,
)
from routine_engine.runtime.loop_controller import (
    LoopContext,
    LoopController,
    LoopPhase,
    LoopState,
)
from routine_engine.runtime.node_executor import (
    NodeExecutorAdapter,
    gather_inputs,
    resolve_signal,
)
from routine_engine.runtime.plugins import (
    NodeExecutor,
    PluginExecutionContext,
    PluginRegistry,
    PluginResult,
    plugin,
)
from routine_engine.runtime.scheduler import (
    SchedulerStatus,
    WavefrontScheduler,
    determine_next_nodes,
    find_ready_nodes,
)

# RoutineExecutor lives in routine_engine.runtime.routine_executor; it reads
# the engine config, which itself imports from this package.

__all__ = [
    "ActivityFailure",
    "ActivityPolicy",
    "ActivityRunner",
    "DirectActivityRunner",
    "ExecutionState",
    "LoopContext",
    "LoopController",
    "LoopPhase",
    "LoopState",
    "NodeExecutionResult",
    "NodeExecutor",
    "NodeExecutorAdapter",
    "NodeStatus",
    "PluginExecutionContext",
    "PluginRegistry",
    "PluginResult",
    "RetryPolicy",
    "SchedulerStatus",
    "WavefrontScheduler",
    "determine_next_nodes",
    "find_ready_nodes",
    "gather_inputs",
    "plugin",
    "resolve_signal",
    "unwrap_error",
]
