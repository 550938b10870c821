"""
Execution Schemas - Payloads exchanged with the persistence sink.

The engine reports a run through three calls (create, status updates and
per-node results). Sinks fold those payloads into an ExecutionRecord that
can be queried afterwards.
"""

from datetime import datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field
from pydantic.alias_generators import to_camel


class RunStatus(StrEnum):
    """Status of a routine run as seen by the sink."""

    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class TriggerType(StrEnum):
    """How a run was started."""

    MANUAL = "manual"
    SCHEDULED = "scheduled"
    WEBHOOK = "webhook"
    EVENT = "event"


class NodeRunStatus(StrEnum):
    """Status of a single stored node result."""

    COMPLETED = "completed"
    FAILED = "failed"


class SinkModel(BaseModel):
    """Base for sink payloads: camelCase on the wire, snake_case in Python."""

    model_config = {
        "alias_generator": to_camel,
        "populate_by_name": True,
        "extra": "allow",
    }


class ExecutionError(SinkModel):
    """Detailed error information recovered from a failed node or run."""

    message: str
    stack: str | None = None
    code: str | None = None
    details: dict[str, Any] = Field(default_factory=dict)


class PathEntry(SinkModel):
    """One completed node attempt in the execution path."""

    node_id: str
    run_index: int

    model_config = {"frozen": True}


class CreateExecutionInput(SinkModel):
    routine_id: str
    user_id: str
    workflow_id: str
    run_id: str
    trigger_type: TriggerType = TriggerType.MANUAL
    trigger_data: Any = None


class UpdateStatusInput(SinkModel):
    workflow_id: str
    routine_id: str
    status: RunStatus
    started_at: datetime | None = None
    completed_at: datetime | None = None
    error: ExecutionError | None = None
    execution_path: list[PathEntry] | None = None


class StoreNodeResultInput(SinkModel):
    workflow_id: str
    routine_id: str
    node_id: str
    iteration: int | None = None
    status: NodeRunStatus
    output: Any = None
    error: ExecutionError | None = None
    completed_at: datetime = Field(default_factory=datetime.now)


class ExecutionRecord(SinkModel):
    """
    Everything a sink knows about one run.

    Built from CreateExecutionInput and updated in place by status updates
    and stored node results.
    """

    workflow_id: str
    routine_id: str
    user_id: str
    run_id: str
    trigger_type: TriggerType = TriggerType.MANUAL
    trigger_data: Any = None

    status: RunStatus = RunStatus.RUNNING
    created_at: datetime = Field(default_factory=datetime.now)
    started_at: datetime | None = None
    completed_at: datetime | None = None
    error: ExecutionError | None = None
    execution_path: list[PathEntry] = Field(default_factory=list)
    node_results: list[StoreNodeResultInput] = Field(default_factory=list)

    @classmethod
    def from_create(cls, payload: CreateExecutionInput) -> "ExecutionRecord":
        return cls(
            workflow_id=payload.workflow_id,
            routine_id=payload.routine_id,
            user_id=payload.user_id,
            run_id=payload.run_id,
            trigger_type=payload.trigger_type,
            trigger_data=payload.trigger_data,
        )

    def apply_status(self, payload: UpdateStatusInput) -> None:
        """Fold a status update into the record. Unset fields keep their value."""
        self.status = payload.status
        if payload.started_at is not None:
            self.started_at = payload.started_at
        if payload.completed_at is not None:
            self.completed_at = payload.completed_at
        if payload.error is not None:
            self.error = payload.error
        if payload.execution_path is not None:
            self.execution_path = list(payload.execution_path)

    def node_results_for(self, node_id: str | None = None) -> list[StoreNodeResultInput]:
        if node_id is None:
            return list(self.node_results)
        return [r for r in self.node_results if r.node_id == node_id]
