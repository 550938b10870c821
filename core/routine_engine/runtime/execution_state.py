"""ExecutionState: everything a single routine run remembers.

Results are append-only: every attempt of a node (a loop can run a node many
times) adds one NodeExecutionResult and one execution path entry. The
latest-output cache and the wavefront ``executed`` set are derived views that
the scheduler reads between waves.

Thread-safe: all mutation goes through one lock, so sibling nodes of a wave
can record their results from worker threads.
"""

from __future__ import annotations

import copy
import threading
from datetime import datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field

from routine_engine.graph.edge import DEFAULT_SIGNAL
from routine_engine.schemas.execution import ExecutionError, PathEntry


class NodeStatus(StrEnum):
    COMPLETED = "completed"
    ERROR = "error"
    SKIPPED = "skipped"


class NodeExecutionResult(BaseModel):
    """Outcome of one attempt of one node."""

    status: NodeStatus
    outputs: dict[str, Any] = Field(default_factory=dict)
    signal: str = DEFAULT_SIGNAL
    error: ExecutionError | None = None
    execution_time_ms: int = 0
    iteration: int | None = None
    completed_at: datetime = Field(default_factory=datetime.now)

    @property
    def succeeded(self) -> bool:
        return self.status != NodeStatus.ERROR


class NodeError(BaseModel):
    """An error result together with the node and attempt that produced it."""

    node_id: str
    run_index: int
    error: ExecutionError


class ExecutionState:
    """Mutable state of a single run. Access only through these methods."""

    def __init__(self, execution_id: str = "") -> None:
        self.execution_id = execution_id
        self._node_results: dict[str, list[NodeExecutionResult]] = {}
        self._node_outputs: dict[str, dict[str, Any]] = {}
        self._node_states: dict[str, dict[str, Any]] = {}
        self._execution_path: list[PathEntry] = []
        self._executed: set[str] = set()
        self._lock = threading.RLock()

    # === RESULTS ===

    def add_result(self, node_id: str, result: NodeExecutionResult) -> int:
        """Append a result and its path entry. Returns the run index used."""
        with self._lock:
            results = self._node_results.setdefault(node_id, [])
            run_index = len(results)
            results.append(result)
            self._node_outputs[node_id] = result.outputs
            self._execution_path.append(PathEntry(node_id=node_id, run_index=run_index))
            return run_index

    def get_run_index(self, node_id: str) -> int:
        """Number of recorded attempts, i.e. the run index of the next one."""
        with self._lock:
            return len(self._node_results.get(node_id, ()))

    def has_executed(self, node_id: str) -> bool:
        return self.get_run_index(node_id) > 0

    def get_node_result(self, node_id: str) -> NodeExecutionResult | None:
        with self._lock:
            results = self._node_results.get(node_id)
            return results[-1] if results else None

    def get_all_node_results(self, node_id: str) -> list[NodeExecutionResult]:
        with self._lock:
            return list(self._node_results.get(node_id, ()))

    def get_output(self, node_id: str) -> dict[str, Any] | None:
        """Latest output of a node, or None if it never ran."""
        with self._lock:
            return self._node_outputs.get(node_id)

    @property
    def node_results(self) -> dict[str, list[NodeExecutionResult]]:
        with self._lock:
            return {node_id: list(results) for node_id, results in self._node_results.items()}

    @property
    def execution_path(self) -> list[PathEntry]:
        with self._lock:
            return list(self._execution_path)

    # === SCRATCH STATE ===

    def get_state(self, node_id: str) -> dict[str, Any]:
        """Per-node scratch state, created on first access and never auto-cleared.

        The returned dict is live; changes are visible to later readers.
        """
        with self._lock:
            return self._node_states.setdefault(node_id, {})

    def set_state(self, node_id: str, state: dict[str, Any]) -> None:
        with self._lock:
            self._node_states[node_id] = state

    # === WAVEFRONT BOOKKEEPING ===

    def mark_executed(self, node_id: str) -> None:
        with self._lock:
            self._executed.add(node_id)

    def unmark_executed(self, node_id: str) -> None:
        with self._lock:
            self._executed.discard(node_id)

    def is_executed(self, node_id: str) -> bool:
        with self._lock:
            return node_id in self._executed

    @property
    def executed(self) -> frozenset[str]:
        with self._lock:
            return frozenset(self._executed)

    # === ERRORS & STATS ===

    def has_errors(self) -> bool:
        with self._lock:
            return any(
                result.status == NodeStatus.ERROR
                for results in self._node_results.values()
                for result in results
            )

    def get_errors(self) -> list[NodeError]:
        """Every error result, in node id order then attempt order."""
        with self._lock:
            errors = []
            for node_id in sorted(self._node_results):
                for run_index, result in enumerate(self._node_results[node_id]):
                    if result.status == NodeStatus.ERROR and result.error is not None:
                        errors.append(
                            NodeError(node_id=node_id, run_index=run_index, error=result.error)
                        )
            return errors

    def get_stats(self) -> dict[str, Any]:
        with self._lock:
            failed = sorted(
                node_id
                for node_id, results in self._node_results.items()
                if results and results[-1].status == NodeStatus.ERROR
            )
            return {
                "unique_nodes": len(self._node_results),
                "total_executions": len(self._execution_path),
                "failed_nodes": len(failed),
                "successful_nodes": len(self._node_results) - len(failed),
            }

    def snapshot(self) -> dict[str, Any]:
        """JSON-friendly copy of the state, for debugging and the CLI."""
        with self._lock:
            return {
                "execution_id": self.execution_id,
                "execution_path": [e.model_dump() for e in self._execution_path],
                "node_results": {
                    node_id: [r.model_dump(mode="json") for r in results]
                    for node_id, results in self._node_results.items()
                },
                "node_states": copy.deepcopy(self._node_states),
            }

    def clear(self) -> None:
        with self._lock:
            self._node_results.clear()
            self._node_outputs.clear()
            self._node_states.clear()
            self._execution_path.clear()
            self._executed.clear()
