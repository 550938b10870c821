"""Execution history sinks."""

from routine_engine.storage.file_sink import FileExecutionSink
from routine_engine.storage.sink import (
    ExecutionNotFoundError,
    ExecutionSink,
    InMemoryExecutionSink,
)

__all__ = [
    "ExecutionNotFoundError",
    "ExecutionSink",
    "FileExecutionSink",
    "InMemoryExecutionSink",
]
