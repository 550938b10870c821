"""Routine graph: data model, adjacency view and validation."""

from routine_engine.graph.edge import (
    DEFAULT_SIGNAL,
    LOOP_HANDLE,
    Connection,
    ConnectionType,
    DataConnection,
    FlowConnection,
    LoopConfig,
    RoutineSpec,
)
from routine_engine.graph.model import (
    ExecutionGraph,
    build_graph,
    find_entry_nodes,
    stable_order,
    topological_order,
)
from routine_engine.graph.node import RoutineNode
from routine_engine.graph.validator import (
    GraphValidationResult,
    GraphValidator,
    IssueSeverity,
    IssueType,
    ValidationIssue,
    validate_graph,
)

__all__ = [
    "DEFAULT_SIGNAL",
    "LOOP_HANDLE",
    "Connection",
    "ConnectionType",
    "DataConnection",
    "ExecutionGraph",
    "FlowConnection",
    "GraphValidationResult",
    "GraphValidator",
    "IssueSeverity",
    "IssueType",
    "LoopConfig",
    "RoutineNode",
    "RoutineSpec",
    "ValidationIssue",
    "build_graph",
    "find_entry_nodes",
    "stable_order",
    "topological_order",
    "validate_graph",
]
