"""Schemas for execution records and sink payloads."""

from routine_engine.schemas.execution import (
    CreateExecutionInput,
    ExecutionError,
    ExecutionRecord,
    NodeRunStatus,
    PathEntry,
    RunStatus,
    StoreNodeResultInput,
    TriggerType,
    UpdateStatusInput,
)

__all__ = [
    "CreateExecutionInput",
    "ExecutionError",
    "ExecutionRecord",
    "NodeRunStatus",
    "PathEntry",
    "RunStatus",
    "StoreNodeResultInput",
    "TriggerType",
    "UpdateStatusInput",
]
