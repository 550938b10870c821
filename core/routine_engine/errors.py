"""
Engine error taxonomy.

- GraphValidationError: structural problems found before a run starts
- DeadlockError: queued nodes remain but none can become ready
- NodeExecutionError: a plugin call failed (fatal for the run)
- ExecutionLimitError: the run exceeded its node execution limit
- PluginNotFoundError: a plugin id has no registered implementation
"""

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from routine_engine.graph.validator import GraphValidationResult
    from routine_engine.schemas.execution import ExecutionError


class EngineError(Exception):
    """Base class for errors raised by the routine engine."""

    error_code: str = "engine_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class GraphValidationError(EngineError):
    """The routine graph is structurally invalid; every problem is reported at once."""

    error_code = "validation_error"

    def __init__(self, result: "GraphValidationResult"):
        lines = "\n".join(f"  - {issue.message}" for issue in result.errors)
        super().__init__(f"Invalid routine graph:\n{lines}")
        self.result = result


class DeadlockError(EngineError):
    """Queued nodes exist but none of them can become ready."""

    error_code = "deadlock"

    def __init__(self, stuck_node_ids: list[str]):
        super().__init__(
            f"Execution deadlocked: {len(stuck_node_ids)} queued node(s) can never "
            f"become ready: {', '.join(stuck_node_ids)}"
        )
        self.stuck_node_ids = list(stuck_node_ids)


class NodeExecutionError(EngineError):
    """A node's plugin call failed. Aborts the whole run."""

    error_code = "node_execution_failed"

    def __init__(self, node_id: str, plugin_id: str, error: "ExecutionError"):
        super().__init__(f"Node {node_id} ({plugin_id}) failed: {error.message}")
        self.node_id = node_id
        self.plugin_id = plugin_id
        self.error = error


class ExecutionLimitError(EngineError):
    """The run executed more node attempts than allowed."""

    error_code = "execution_limit"

    def __init__(self, limit: int):
        super().__init__(f"Execution exceeded the limit of {limit} node executions")
        self.limit = limit


class PluginNotFoundError(EngineError):
    """No implementation registered for a plugin id."""

    error_code = "plugin_not_found"

    def __init__(self, plugin_id: str):
        super().__init__(f"Plugin not found: {plugin_id}")
        self.plugin_id = plugin_id
