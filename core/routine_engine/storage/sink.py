"""
Execution sink - where the engine reports a run.

From the engine's point of view the sink is fire-and-forget: failures are
logged by the caller and never abort the run. Implementations also expose
read queries for execution history.
"""

import asyncio
import logging
from typing import Protocol, runtime_checkable

from routine_engine.schemas.execution import (
    CreateExecutionInput,
    ExecutionRecord,
    StoreNodeResultInput,
    UpdateStatusInput,
)

logger = logging.getLogger(__name__)


@runtime_checkable
class ExecutionSink(Protocol):
    """Persistence interface the engine writes to."""

    async def create_execution(self, payload: CreateExecutionInput) -> None: ...

    async def update_status(self, payload: UpdateStatusInput) -> None: ...

    async def store_node_result(self, payload: StoreNodeResultInput) -> None: ...


class ExecutionNotFoundError(KeyError):
    """Status update or node result for an execution that was never created."""

    def __init__(self, workflow_id: str):
        super().__init__(workflow_id)
        self.workflow_id = workflow_id

    def __str__(self) -> str:
        return f"Execution not found: {self.workflow_id}"


class InMemoryExecutionSink:
    """
    Keeps execution records in a dict.

    Used by tests and by the CLI when no storage directory is given.
    """

    def __init__(self):
        self._records: dict[str, ExecutionRecord] = {}
        self._lock = asyncio.Lock()

    async def create_execution(self, payload: CreateExecutionInput) -> None:
        async with self._lock:
            if payload.workflow_id in self._records:
                logger.debug("Execution %s already exists; keeping it", payload.workflow_id)
                return
            self._records[payload.workflow_id] = ExecutionRecord.from_create(payload)

    async def update_status(self, payload: UpdateStatusInput) -> None:
        async with self._lock:
            self._get(payload.workflow_id).apply_status(payload)

    async def store_node_result(self, payload: StoreNodeResultInput) -> None:
        async with self._lock:
            self._get(payload.workflow_id).node_results.append(payload)

    def _get(self, workflow_id: str) -> ExecutionRecord:
        record = self._records.get(workflow_id)
        if record is None:
            raise ExecutionNotFoundError(workflow_id)
        return record

    # === QUERIES ===

    async def get_execution(self, workflow_id: str) -> ExecutionRecord | None:
        return self._records.get(workflow_id)

    async def list_executions(self, routine_id: str | None = None) -> list[ExecutionRecord]:
        """Executions, newest first, optionally for one routine."""
        records = [
            r for r in self._records.values() if routine_id is None or r.routine_id == routine_id
        ]
        return sorted(records, key=lambda r: r.created_at, reverse=True)

    async def get_node_results(
        self, workflow_id: str, node_id: str | None = None
    ) -> list[StoreNodeResultInput]:
        record = self._records.get(workflow_id)
        if record is None:
            return []
        return record.node_results_for(node_id)
