"""
Loop Controller - Iteration and accumulator lifecycle for loop edges.

Each loop edge runs a small state machine:

    NOT_STARTED -> ITERATING -> STOPPED_MAX_ITERATIONS
                             -> STOPPED_CONDITION

The state lives in the loop target's scratch state under
``state.get_state(target)["loops"][edge_id]`` so it survives as long as the
run does and is visible in state snapshots.
"""

import copy
import logging
from datetime import datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field

from routine_engine.graph.edge import FlowConnection
from routine_engine.graph.model import ExecutionGraph
from routine_engine.runtime.execution_state import ExecutionState

logger = logging.getLogger(__name__)

LOOPS_STATE_KEY = "loops"

_MISSING = object()


class LoopPhase(StrEnum):
    NOT_STARTED = "not_started"
    ITERATING = "iterating"
    STOPPED_MAX_ITERATIONS = "stopped_max_iterations"
    STOPPED_CONDITION = "stopped_condition"

    @property
    def stopped(self) -> bool:
        return self in (LoopPhase.STOPPED_MAX_ITERATIONS, LoopPhase.STOPPED_CONDITION)


class LoopState(BaseModel):
    """Persisted state of one loop edge."""

    edge_id: str
    target_node_id: str
    phase: LoopPhase = LoopPhase.NOT_STARTED
    iteration: int = 0
    max_iterations: int = 1
    accumulator_fields: list[str] = Field(default_factory=list)
    accumulator: dict[str, Any] = Field(default_factory=dict)
    started_at: str | None = None


class LoopContext(BaseModel):
    """Loop information handed to plugins running inside a loop body."""

    edge_id: str
    iteration: int
    max_iterations: int
    accumulator: dict[str, Any] = Field(default_factory=dict)


def get_path(data: Any, path: str) -> Any:
    """Read a dotted path ("stats.count") from nested dicts. Returns _MISSING if absent."""
    current = data
    for part in path.split("."):
        if not isinstance(current, dict) or part not in current:
            return _MISSING
        current = current[part]
    return current


class LoopController:
    """
    Drives loop edges for one run.

    Args:
        graph: The run's graph. Needed for loop bodies (nested resets and the
            active loop lookup); the basic state machine works without it.
    """

    def __init__(self, graph: ExecutionGraph | None = None):
        self.graph = graph

    # === STATE ACCESS ===

    def _loops(self, state: ExecutionState, target_node_id: str) -> dict[str, Any]:
        return state.get_state(target_node_id).setdefault(LOOPS_STATE_KEY, {})

    def get_loop_state(
        self, edge_id: str, target_node_id: str, state: ExecutionState
    ) -> LoopState | None:
        raw = self._loops(state, target_node_id).get(edge_id)
        return LoopState.model_validate(raw) if raw is not None else None

    def _save(self, loop: LoopState, state: ExecutionState) -> None:
        self._loops(state, loop.target_node_id)[loop.edge_id] = loop.model_dump(mode="json")

    def reset_loop(self, edge_id: str, target_node_id: str, state: ExecutionState) -> None:
        self._loops(state, target_node_id).pop(edge_id, None)

    # === STATE MACHINE ===

    def update_loop_state(
        self,
        edge_id: str,
        target_node_id: str,
        max_iterations: int,
        accumulator_fields: list[str],
        latest_output: dict[str, Any] | None,
        state: ExecutionState,
    ) -> bool:
        """
        Record one completed pass and decide whether to go around again.

        Returns True when the loop target should be re-queued.
        """
        loop = self.get_loop_state(edge_id, target_node_id, state) or LoopState(
            edge_id=edge_id,
            target_node_id=target_node_id,
            max_iterations=max_iterations,
            accumulator_fields=list(accumulator_fields),
        )
        if loop.phase.stopped:
            logger.debug("Loop %s already stopped (%s)", edge_id, loop.phase)
            return False

        if loop.phase == LoopPhase.NOT_STARTED:
            loop.phase = LoopPhase.ITERATING
            loop.started_at = datetime.now().isoformat()

        for path in accumulator_fields:
            value = get_path(latest_output or {}, path)
            if value is not _MISSING:
                loop.accumulator[path] = value

        loop.iteration += 1
        if loop.iteration >= max_iterations:
            loop.phase = LoopPhase.STOPPED_MAX_ITERATIONS
            self._save(loop, state)
            logger.info(
                "Loop %s reached max iterations (%d)",
                edge_id,
                max_iterations,
                extra={"event": "loop_stopped", "node_id": target_node_id},
            )
            return False

        self._save(loop, state)
        logger.info(
            "↻ Loop %s iteration %d/%d",
            edge_id,
            loop.iteration,
            max_iterations,
            extra={"event": "loop_iteration", "node_id": target_node_id},
        )
        return True

    def stop_on_condition(self, edge: FlowConnection, state: ExecutionState) -> bool:
        """The loop source emitted another signal: stop an iterating loop.

        Returns True when the loop changed phase.
        """
        loop = self.get_loop_state(edge.id, edge.target_node_id, state)
        if loop is None or loop.phase != LoopPhase.ITERATING:
            return False
        loop.phase = LoopPhase.STOPPED_CONDITION
        self._save(loop, state)
        logger.info(
            "Loop %s stopped by condition after %d iteration(s)",
            edge.id,
            loop.iteration,
            extra={"event": "loop_stopped", "node_id": edge.target_node_id},
        )
        return True

    # === BODY-AWARE HELPERS ===

    def reset_nested_loops(self, edge_id: str, state: ExecutionState) -> list[str]:
        """Forget the state of loops that sit entirely inside edge_id's body.

        Called when edge_id goes around again so inner loops start fresh.
        Returns the ids of the loops that were reset.
        """
        if self.graph is None:
            return []
        body = self.graph.loop_body(edge_id)
        reset = []
        for inner in self.graph.loop_edges:
            if inner.id == edge_id:
                continue
            inner_body = self.graph.loop_body(inner.id)
            if inner_body < body and inner.source_node_id in body:
                self.reset_loop(inner.id, inner.target_node_id, state)
                reset.append(inner.id)
        return sorted(reset)

    def active_loop_for(self, node_id: str, state: ExecutionState) -> LoopContext | None:
        """The innermost iterating loop whose body contains node_id."""
        if self.graph is None:
            return None
        candidates = []
        for edge in self.graph.loop_edges:
            body = self.graph.loop_body(edge.id)
            if node_id not in body:
                continue
            loop = self.get_loop_state(edge.id, edge.target_node_id, state)
            if loop is not None and loop.phase == LoopPhase.ITERATING:
                candidates.append((len(body), edge.id, loop))
        if not candidates:
            return None
        _, _, loop = min(candidates, key=lambda c: (c[0], c[1]))
        return LoopContext(
            edge_id=loop.edge_id,
            iteration=loop.iteration,
            max_iterations=loop.max_iterations,
            accumulator=copy.deepcopy(loop.accumulator),
        )
