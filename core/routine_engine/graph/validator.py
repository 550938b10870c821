"""
Graph validation for routines.

Structural problems are collected as a batch so the editor can show every
issue at once. The engine refuses to start a run when any error is present;
warnings are informational.
"""

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import StrEnum

from pydantic import BaseModel

from routine_engine.errors import GraphValidationError
from routine_engine.graph.edge import (
    LOOP_HANDLE,
    MAX_LOOP_ITERATIONS,
    MIN_LOOP_ITERATIONS,
    DataConnection,
)
from routine_engine.graph.model import ExecutionGraph, topological_order

logger = logging.getLogger(__name__)


class IssueType(StrEnum):
    # errors
    EMPTY_ROUTINE = "empty_routine"
    DUPLICATE_NODE = "duplicate_node"
    DUPLICATE_CONNECTION = "duplicate_connection"
    MISSING_NODE = "missing_node"
    NO_ENTRY_NODES = "no_entry_nodes"
    CYCLE_DETECTED = "cycle_detected"
    INVALID_LOOP_CONFIG = "invalid_loop_config"
    UNREACHABLE_NODE = "unreachable_node"
    UNKNOWN_PLUGIN = "unknown_plugin"
    # warnings
    LOOP_WITHOUT_CONFIG = "loop_without_config"
    ORPHANED_NODE = "orphaned_node"
    MULTIPLE_ENTRY_NODES = "multiple_entry_nodes"
    DATA_SOURCE_NOT_UPSTREAM = "data_source_not_upstream"
    DISABLED_NODE = "disabled_node"


class IssueSeverity(StrEnum):
    ERROR = "error"
    WARNING = "warning"


class ValidationIssue(BaseModel):
    """A single validation finding."""

    type: IssueType
    severity: IssueSeverity = IssueSeverity.ERROR
    message: str
    node_id: str | None = None
    edge_id: str | None = None

    model_config = {"frozen": True}


@dataclass
class GraphValidationResult:
    """Result of validating a routine graph."""

    errors: list[ValidationIssue] = field(default_factory=list)
    warnings: list[ValidationIssue] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not self.errors

    @property
    def error(self) -> str:
        """Get combined error message."""
        return "; ".join(issue.message for issue in self.errors)

    def of_type(self, issue_type: IssueType) -> list[ValidationIssue]:
        return [i for i in (*self.errors, *self.warnings) if i.type == issue_type]

    def add_error(self, issue_type: IssueType, message: str, **ids: str) -> None:
        self.errors.append(ValidationIssue(type=issue_type, message=message, **ids))

    def add_warning(self, issue_type: IssueType, message: str, **ids: str) -> None:
        self.warnings.append(
            ValidationIssue(
                type=issue_type, severity=IssueSeverity.WARNING, message=message, **ids
            )
        )


class GraphValidator:
    """
    Validates routine graphs before execution.

    Args:
        plugin_ids: Known plugin ids. When given, nodes referencing any other
            plugin fail validation. When None the plugin check is skipped.
    """

    def __init__(self, plugin_ids: Iterable[str] | None = None):
        self.plugin_ids = set(plugin_ids) if plugin_ids is not None else None

    def validate(self, graph: ExecutionGraph) -> GraphValidationResult:
        result = GraphValidationResult()

        if not graph.nodes:
            result.add_error(IssueType.EMPTY_ROUTINE, "Routine has no nodes")
            return result

        self._check_duplicates(graph, result)
        self._check_references(graph, result)
        self._check_plugins(graph, result)
        self._check_loops(graph, result)

        entries = graph.entry_nodes()
        if not entries:
            result.add_error(
                IssueType.NO_ENTRY_NODES,
                "No entry node: every node has an incoming flow connection",
            )
        elif len(entries) > 1:
            result.add_warning(
                IssueType.MULTIPLE_ENTRY_NODES,
                f"Routine has {len(entries)} entry nodes: {', '.join(entries)}",
            )

        _, residual = topological_order(graph)
        if residual:
            result.add_error(
                IssueType.CYCLE_DETECTED,
                f"Cycle detected among nodes: {', '.join(residual)}. "
                "Use a loop connection with loopConfig to repeat nodes",
            )

        if entries:
            reachable = graph.reachable_from(entries)
            for node_id in graph.node_ids:
                if node_id not in reachable:
                    result.add_error(
                        IssueType.UNREACHABLE_NODE,
                        f"Node '{node_id}' is not reachable from any entry node",
                        node_id=node_id,
                    )

        self._check_orphans(graph, result)
        self._check_data_connections(graph, result)

        for node_id in graph.node_ids:
            if not graph.nodes[node_id].enabled:
                result.add_warning(
                    IssueType.DISABLED_NODE,
                    f"Node '{node_id}' is disabled and will pass its inputs through",
                    node_id=node_id,
                )

        if not result.valid:
            logger.debug(
                "Routine %s failed validation with %d error(s)",
                graph.routine_id,
                len(result.errors),
            )
        return result

    def ensure_valid(self, graph: ExecutionGraph) -> GraphValidationResult:
        """Validate and raise GraphValidationError when any error is found."""
        result = self.validate(graph)
        if not result.valid:
            raise GraphValidationError(result)
        return result

    def _check_duplicates(self, graph: ExecutionGraph, result: GraphValidationResult) -> None:
        for node_id in graph.duplicate_node_ids:
            result.add_error(
                IssueType.DUPLICATE_NODE, f"Duplicate node id '{node_id}'", node_id=node_id
            )
        for edge_id in graph.duplicate_connection_ids:
            result.add_error(
                IssueType.DUPLICATE_CONNECTION,
                f"Duplicate connection id '{edge_id}'",
                edge_id=edge_id,
            )

    def _check_references(self, graph: ExecutionGraph, result: GraphValidationResult) -> None:
        for conn in graph.connections:
            for role, node_id in (("source", conn.source_node_id), ("target", conn.target_node_id)):
                if node_id not in graph.nodes:
                    result.add_error(
                        IssueType.MISSING_NODE,
                        f"Connection '{conn.id}' references missing {role} node '{node_id}'",
                        edge_id=conn.id,
                        node_id=node_id,
                    )

    def _check_plugins(self, graph: ExecutionGraph, result: GraphValidationResult) -> None:
        if self.plugin_ids is None:
            return
        for node_id in graph.node_ids:
            plugin_id = graph.nodes[node_id].plugin_id
            if plugin_id not in self.plugin_ids:
                result.add_error(
                    IssueType.UNKNOWN_PLUGIN,
                    f"Node '{node_id}' uses unknown plugin '{plugin_id}'",
                    node_id=node_id,
                )

    def _check_loops(self, graph: ExecutionGraph, result: GraphValidationResult) -> None:
        for conn in graph.flow_connections:
            if conn.loop_config is None:
                if conn.source_handle == LOOP_HANDLE:
                    result.add_warning(
                        IssueType.LOOP_WITHOUT_CONFIG,
                        f"Loop connection '{conn.id}' has no loopConfig and "
                        "will behave as a plain flow connection",
                        edge_id=conn.id,
                    )
                continue
            max_iterations = conn.loop_config.max_iterations
            if not MIN_LOOP_ITERATIONS <= max_iterations <= MAX_LOOP_ITERATIONS:
                result.add_error(
                    IssueType.INVALID_LOOP_CONFIG,
                    f"Loop connection '{conn.id}' has maxIterations={max_iterations}; "
                    f"must be between {MIN_LOOP_ITERATIONS} and {MAX_LOOP_ITERATIONS}",
                    edge_id=conn.id,
                )

    def _check_orphans(self, graph: ExecutionGraph, result: GraphValidationResult) -> None:
        if len(graph.nodes) < 2:
            return
        connected = set()
        for conn in graph.flow_connections:
            connected.add(conn.source_node_id)
            connected.add(conn.target_node_id)
        for node_id in graph.node_ids:
            if node_id not in connected:
                result.add_warning(
                    IssueType.ORPHANED_NODE,
                    f"Node '{node_id}' has no flow connections",
                    node_id=node_id,
                )

    def _check_data_connections(
        self, graph: ExecutionGraph, result: GraphValidationResult
    ) -> None:
        for conn in graph.connections:
            if not isinstance(conn, DataConnection):
                continue
            if conn.source_node_id not in graph.nodes or conn.target_node_id not in graph.nodes:
                continue
            if conn.source_node_id not in graph.ancestors_of(conn.target_node_id):
                result.add_warning(
                    IssueType.DATA_SOURCE_NOT_UPSTREAM,
                    f"Data connection '{conn.id}' reads from '{conn.source_node_id}', "
                    f"which does not run before '{conn.target_node_id}'",
                    edge_id=conn.id,
                    node_id=conn.target_node_id,
                )


def validate_graph(
    graph: ExecutionGraph, plugin_ids: Iterable[str] | None = None
) -> GraphValidationResult:
    """Validate a graph with a one-off GraphValidator."""
    return GraphValidator(plugin_ids).validate(graph)
