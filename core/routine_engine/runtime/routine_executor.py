"""
Routine Executor - Runs a routine from definition to terminal status.

The executor:
1. Builds and validates the execution graph
2. Opens the execution record in the sink
3. Runs the wavefront scheduler
4. Records the terminal status (with the partial path on failure)
5. Returns an ExecutionResult
"""

import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from routine_engine.config import EngineConfig
from routine_engine.errors import EngineError, GraphValidationError, NodeExecutionError
from routine_engine.graph.edge import RoutineSpec
from routine_engine.graph.model import ExecutionGraph, build_graph
from routine_engine.graph.validator import GraphValidationResult, GraphValidator
from routine_engine.observability import trace_scope
from routine_engine.runtime.activity import (
    ActivityRunner,
    DirectActivityRunner,
    describe_error,
    unwrap_error,
)
from routine_engine.runtime.execution_state import ExecutionState, NodeExecutionResult
from routine_engine.runtime.loop_controller import LoopController
from routine_engine.runtime.node_executor import NodeExecutorAdapter
from routine_engine.runtime.plugins import NodeExecutor, PluginRegistry
from routine_engine.runtime.scheduler import SchedulerStatus, WavefrontScheduler
from routine_engine.schemas.execution import (
    CreateExecutionInput,
    ExecutionError,
    PathEntry,
    RunStatus,
    TriggerType,
    UpdateStatusInput,
)
from routine_engine.storage.sink import ExecutionSink


@dataclass
class ExecutionResult:
    """Result of running a routine."""

    success: bool
    status: RunStatus
    execution_id: str
    routine_id: str = ""
    error: str | None = None
    error_details: ExecutionError | None = None
    failed_node_id: str | None = None
    path: list[PathEntry] = field(default_factory=list)
    node_results: dict[str, list[NodeExecutionResult]] = field(default_factory=dict)
    validation: GraphValidationResult | None = None
    scheduler_status: SchedulerStatus | None = None
    waves: int = 0
    pruned_nodes: list[str] = field(default_factory=list)
    total_latency_ms: int = 0

    @property
    def executed_node_ids(self) -> list[str]:
        """Node ids in path order, one entry per attempt."""
        return [entry.node_id for entry in self.path]

    def output_of(self, node_id: str) -> dict[str, Any] | None:
        """Latest output of a node, or None if it never ran."""
        results = self.node_results.get(node_id)
        return results[-1].outputs if results else None

    def summary(self) -> dict[str, Any]:
        """JSON-friendly summary, as printed by the CLI."""
        return {
            "success": self.success,
            "status": self.status.value,
            "executionId": self.execution_id,
            "routineId": self.routine_id,
            "error": self.error,
            "failedNodeId": self.failed_node_id,
            "path": [f"{e.node_id}#{e.run_index}" for e in self.path],
            "outputs": {node_id: self.output_of(node_id) for node_id in sorted(self.node_results)},
            "waves": self.waves,
            "prunedNodes": self.pruned_nodes,
            "totalLatencyMs": self.total_latency_ms,
        }


def generate_execution_id() -> str:
    """Execution id in the form exec_YYYYMMDD_HHMMSS_{uuid8}."""
    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    return f"exec_{timestamp}_{uuid.uuid4().hex[:8]}"


def trigger_type_of(trigger_data: Any) -> TriggerType:
    """Trigger type named in the trigger data, manual by default."""
    if isinstance(trigger_data, dict):
        value = trigger_data.get("triggerType", trigger_data.get("trigger_type"))
        if isinstance(value, str) and value in {t.value for t in TriggerType}:
            return TriggerType(value)
    return TriggerType.MANUAL


class RoutineExecutor:
    """
    Runs routines against a plugin capability.

    Example:
        registry = PluginRegistry()
        registry.register("static-data", lambda config, inputs, ctx: config["data"])

        executor = RoutineExecutor(registry, sink=InMemoryExecutionSink())
        result = await executor.execute(routine_spec)
        if not result.success:
            print(result.error)
    """

    def __init__(
        self,
        executor: NodeExecutor,
        sink: ExecutionSink | None = None,
        runner: ActivityRunner | None = None,
        config: EngineConfig | None = None,
    ):
        self.executor = executor
        self.sink = sink
        self.config = config or EngineConfig.load()
        self.runner = runner or DirectActivityRunner(self.config.plugin_policy)
        self.logger = logging.getLogger(__name__)

    def validate(self, routine: RoutineSpec | dict[str, Any]) -> GraphValidationResult:
        """Validate a routine without running it."""
        return self._validator().validate(self._build(routine))

    def _validator(self) -> GraphValidator:
        # Unknown plugins can only be checked against a registry
        if isinstance(self.executor, PluginRegistry):
            return GraphValidator(plugin_ids=self.executor.plugin_ids)
        return GraphValidator()

    def _build(self, routine: RoutineSpec | ExecutionGraph | dict[str, Any]) -> ExecutionGraph:
        if isinstance(routine, ExecutionGraph):
            return routine
        spec = routine if isinstance(routine, RoutineSpec) else RoutineSpec.model_validate(routine)
        return build_graph(
            spec.nodes,
            spec.connections,
            routine_id=spec.routine_id,
            user_id=spec.user_id,
            trigger_data=spec.trigger_data,
        )

    async def execute(
        self,
        routine: RoutineSpec | ExecutionGraph | dict[str, Any],
        execution_id: str | None = None,
        run_id: str | None = None,
        raise_on_failure: bool = False,
    ) -> ExecutionResult:
        """
        Run a routine to completion.

        Args:
            routine: Routine definition (model, raw dict or prebuilt graph)
            execution_id: Workflow id for the sink; generated when omitted
            run_id: Substrate run id; generated when omitted
            raise_on_failure: Re-raise the failure after the sink has been
                updated, for substrates that must see the workflow fail

        Returns:
            ExecutionResult with status, path and per-node results
        """
        graph = self._build(routine)
        execution_id = execution_id or generate_execution_id()
        run_id = run_id or uuid.uuid4().hex

        with trace_scope(
            execution_id=execution_id, routine_id=graph.routine_id, user_id=graph.user_id
        ):
            return await self._execute(graph, execution_id, run_id, raise_on_failure)

    async def _execute(
        self,
        graph: ExecutionGraph,
        execution_id: str,
        run_id: str,
        raise_on_failure: bool,
    ) -> ExecutionResult:
        validation = self._validator().validate(graph)
        for warning in validation.warnings:
            self.logger.warning(f"⚠ {warning.message}", extra={"event": "validation_warning"})
        if not validation.valid:
            failure = GraphValidationError(validation)
            self.logger.error(f"❌ {failure.message}", extra={"event": "validation_failed"})
            if raise_on_failure:
                raise failure
            return ExecutionResult(
                success=False,
                status=RunStatus.FAILED,
                execution_id=execution_id,
                routine_id=graph.routine_id,
                error=failure.message,
                error_details=ExecutionError(message=failure.message, code=failure.error_code),
                validation=validation,
            )

        await self._sink_call(
            "create_execution",
            CreateExecutionInput(
                routine_id=graph.routine_id,
                user_id=graph.user_id,
                workflow_id=execution_id,
                run_id=run_id,
                trigger_type=trigger_type_of(graph.trigger_data),
                trigger_data=graph.trigger_data,
            ),
        )
        await self._sink_call(
            "update_status",
            UpdateStatusInput(
                workflow_id=execution_id,
                routine_id=graph.routine_id,
                status=RunStatus.RUNNING,
                started_at=datetime.now(),
            ),
        )

        state = ExecutionState(execution_id)
        adapter = NodeExecutorAdapter(
            self.executor,
            sink=self.sink,
            runner=self.runner,
            plugin_policy=self.config.plugin_policy,
            sink_policy=self.config.sink_policy,
        )
        scheduler = WavefrontScheduler(
            graph,
            adapter,
            state=state,
            loop_controller=LoopController(graph),
            max_concurrent_nodes=self.config.max_concurrent_nodes,
            max_node_executions=self.config.max_node_executions,
        )

        started = time.perf_counter()
        failure: Exception | None = None
        try:
            await scheduler.run()
        except Exception as e:
            failure = e
        latency_ms = int((time.perf_counter() - started) * 1000)

        result = ExecutionResult(
            success=failure is None,
            status=RunStatus.COMPLETED if failure is None else RunStatus.FAILED,
            execution_id=execution_id,
            routine_id=graph.routine_id,
            path=state.execution_path,
            node_results=state.node_results,
            validation=validation,
            scheduler_status=scheduler.status,
            waves=scheduler.waves,
            pruned_nodes=list(scheduler.pruned),
            total_latency_ms=latency_ms,
        )

        if failure is None:
            await self._sink_call(
                "update_status",
                UpdateStatusInput(
                    workflow_id=execution_id,
                    routine_id=graph.routine_id,
                    status=RunStatus.COMPLETED,
                    completed_at=datetime.now(),
                    execution_path=result.path,
                ),
            )
            return result

        if isinstance(failure, NodeExecutionError):
            result.error_details = failure.error
            result.failed_node_id = failure.node_id
        else:
            result.error_details = describe_error(failure)
            result.failed_node_id = scheduler.failed_node_id
            if not isinstance(failure, EngineError):
                self.logger.exception("Unexpected error while running routine", exc_info=failure)
        result.error = str(failure)
        self.logger.error(
            f"✗ Routine failed: {result.error}",
            extra={"event": "routine_failed", "node_id": result.failed_node_id},
        )

        await self._sink_call(
            "update_status",
            UpdateStatusInput(
                workflow_id=execution_id,
                routine_id=graph.routine_id,
                status=RunStatus.FAILED,
                completed_at=datetime.now(),
                error=result.error_details,
                execution_path=result.path,
            ),
        )
        if raise_on_failure:
            raise failure
        return result

    async def _sink_call(self, method: str, payload: Any) -> None:
        if self.sink is None:
            return
        try:
            await self.runner.run(
                method, getattr(self.sink, method), payload, policy=self.config.sink_policy
            )
        except Exception as e:
            # Persistence is best effort; never abort the run over it
            self.logger.warning(
                f"Sink {method} failed: {unwrap_error(e)}", extra={"event": "sink_failed"}
            )
