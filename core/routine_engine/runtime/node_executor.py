"""
Node Executor Adapter - Runs one ready node.

Turns a node into a plugin call and folds the outcome back into the
execution state:

1. gather inputs from the latest outputs of upstream data connections
2. look up the innermost active loop for the loop context
3. call the plugin through the activity runner
4. record the result (and report it to the sink)
5. on failure record the error, report it, and raise NodeExecutionError
"""

import logging
import time
from typing import Any

from routine_engine.errors import NodeExecutionError
from routine_engine.graph.edge import DEFAULT_SIGNAL, DataConnection
from routine_engine.graph.model import ExecutionGraph
from routine_engine.observability import set_trace_context
from routine_engine.runtime.activity import (
    ActivityPolicy,
    ActivityRunner,
    DirectActivityRunner,
    describe_error,
    unwrap_error,
)
from routine_engine.runtime.execution_state import (
    ExecutionState,
    NodeExecutionResult,
    NodeStatus,
)
from routine_engine.runtime.loop_controller import LoopController
from routine_engine.runtime.plugins import NodeExecutor, PluginExecutionContext, PluginResult
from routine_engine.schemas.execution import NodeRunStatus, StoreNodeResultInput
from routine_engine.storage.sink import ExecutionSink


def map_input(inputs: dict[str, Any], edge: DataConnection, source_output: Any) -> None:
    """
    Apply one data connection to the inputs being built.

    - sourceHandle picks a field of the source output (missing field: no-op)
    - targetHandle names the input; without it dict values are merged and
      anything else is stored as ``from_<sourceNodeId>``
    """
    value = source_output
    if edge.source_handle:
        if not isinstance(source_output, dict) or edge.source_handle not in source_output:
            return
        value = source_output[edge.source_handle]

    if edge.target_handle:
        inputs[edge.target_handle] = value
    elif isinstance(value, dict):
        inputs.update(value)
    else:
        inputs[f"from_{edge.source_node_id}"] = value


def gather_inputs(node_id: str, graph: ExecutionGraph, state: ExecutionState) -> dict[str, Any]:
    """Inputs for a node from the latest outputs of its data sources.

    Connections are applied in definition order, so a later connection wins
    when two write the same key. Sources that have not run contribute nothing.
    """
    inputs: dict[str, Any] = {}
    for edge in graph.incoming_data(node_id):
        source_output = state.get_output(edge.source_node_id)
        if source_output is None:
            continue
        map_input(inputs, edge, source_output)
    return inputs


def resolve_signal(result: PluginResult, handles: list[str]) -> str:
    """
    Control signal for a plugin result.

    An explicit signal wins. Otherwise an output with exactly one key that
    names one of the node's outgoing flow handles (``{"true": {...}}`` from an
    if-else plugin) emits that key. Otherwise "default".
    """
    if result.signal:
        return result.signal
    if len(result.data) == 1:
        (key,) = result.data
        if key in handles:
            return key
    return DEFAULT_SIGNAL


class NodeExecutorAdapter:
    """
    Executes single nodes on behalf of the scheduler.

    Args:
        executor: Plugin capability (usually a PluginRegistry)
        sink: Optional persistence sink for node results
        runner: Activity runner; DirectActivityRunner when omitted
        plugin_policy: Policy for plugin activities
        sink_policy: Policy for sink activities
    """

    def __init__(
        self,
        executor: NodeExecutor,
        sink: ExecutionSink | None = None,
        runner: ActivityRunner | None = None,
        plugin_policy: ActivityPolicy | None = None,
        sink_policy: ActivityPolicy | None = None,
    ):
        self.executor = executor
        self.sink = sink
        self.runner = runner or DirectActivityRunner()
        self.plugin_policy = plugin_policy
        self.sink_policy = sink_policy
        self.logger = logging.getLogger(__name__)

    async def execute(
        self,
        node_id: str,
        graph: ExecutionGraph,
        state: ExecutionState,
        loop_controller: LoopController | None = None,
    ) -> NodeExecutionResult:
        node = graph.get_node(node_id)
        if node is None:
            raise KeyError(f"Node not found: {node_id}")

        # Runs in its own task, so this does not leak into sibling nodes
        set_trace_context(node_id=node_id)
        run_index = state.get_run_index(node_id)
        inputs = gather_inputs(node_id, graph, state)

        if not node.enabled:
            result = NodeExecutionResult(status=NodeStatus.SKIPPED, outputs=inputs)
            state.add_result(node_id, result)
            self.logger.info(
                f"   ⤼ Skipped disabled node {node.display_name}",
                extra={"event": "node_skipped", "node_id": node_id, "run_index": run_index},
            )
            return result

        loops = loop_controller or LoopController(graph)
        loop_context = loops.active_loop_for(node_id, state)
        iteration = loop_context.iteration if loop_context else None

        context = PluginExecutionContext(
            user_id=graph.user_id,
            routine_id=graph.routine_id,
            execution_id=state.execution_id,
            node_id=node_id,
            trigger_data=graph.trigger_data,
            run_index=run_index,
            loop_iteration=iteration,
            loop_accumulator=dict(loop_context.accumulator) if loop_context else None,
            node_state=state.get_state(node_id),
            heartbeat=self.runner.heartbeat,
        )

        self.logger.info(
            f"▶ {node.display_name} ({node.plugin_id})",
            extra={"event": "node_started", "node_id": node_id, "run_index": run_index},
        )
        started = time.perf_counter()
        try:
            raw = await self.runner.run(
                f"execute_plugin:{node.plugin_id}",
                self.executor.execute,
                node.plugin_id,
                node.config,
                inputs,
                context,
                policy=self.plugin_policy,
            )
        except Exception as e:
            elapsed_ms = int((time.perf_counter() - started) * 1000)
            error = describe_error(e)
            result = NodeExecutionResult(
                status=NodeStatus.ERROR,
                error=error,
                execution_time_ms=elapsed_ms,
                iteration=iteration,
            )
            state.add_result(node_id, result)
            self.logger.error(
                f"   ✗ {node.display_name} failed: {error.message}",
                extra={
                    "event": "node_failed",
                    "node_id": node_id,
                    "run_index": run_index,
                    "latency_ms": elapsed_ms,
                },
            )
            await self._store(
                StoreNodeResultInput(
                    workflow_id=state.execution_id,
                    routine_id=graph.routine_id,
                    node_id=node_id,
                    iteration=iteration,
                    status=NodeRunStatus.FAILED,
                    error=error,
                ),
            )
            raise NodeExecutionError(node_id, node.plugin_id, error) from unwrap_error(e)

        elapsed_ms = int((time.perf_counter() - started) * 1000)
        plugin_result = PluginResult.coerce(raw)
        signal = resolve_signal(plugin_result, graph.flow_handles(node_id))
        result = NodeExecutionResult(
            status=NodeStatus.COMPLETED,
            outputs=plugin_result.data,
            signal=signal,
            execution_time_ms=elapsed_ms,
            iteration=iteration,
        )
        state.add_result(node_id, result)
        self.logger.info(
            f"   ✓ {node.display_name} → {signal}",
            extra={
                "event": "node_completed",
                "node_id": node_id,
                "run_index": run_index,
                "latency_ms": elapsed_ms,
                "signal": signal,
            },
        )
        await self._store(
            StoreNodeResultInput(
                workflow_id=state.execution_id,
                routine_id=graph.routine_id,
                node_id=node_id,
                iteration=iteration,
                status=NodeRunStatus.COMPLETED,
                output=plugin_result.data,
            ),
        )
        return result

    async def _store(self, payload: StoreNodeResultInput) -> None:
        if self.sink is None:
            return
        try:
            await self.runner.run(
                "store_node_result",
                self.sink.store_node_result,
                payload,
                policy=self.sink_policy,
            )
        except Exception as e:
            # Persistence is best effort; the run goes on
            self.logger.warning(
                f"Failed to store result of node {payload.node_id}: {unwrap_error(e)}",
                extra={"event": "sink_failed", "node_id": payload.node_id},
            )
