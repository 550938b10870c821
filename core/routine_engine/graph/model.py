"""
Execution Graph - In-memory adjacency view of a routine.

Built once per run from the node and connection lists and read-only during
traversal. Building never fails on dangling references or duplicate ids;
those are bookkept here and reported by the validator.
"""

from collections import deque
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

from routine_engine.graph.edge import (
    Connection,
    DataConnection,
    FlowConnection,
    RoutineSpec,
)
from routine_engine.graph.node import RoutineNode


def stable_order(node_ids: Iterable[str]) -> list[str]:
    """
    The single set-to-sequence conversion used by the engine.

    Ascending id order, duplicates removed. Every place that turns a set of
    node ids into a list goes through here so runs replay identically.
    """
    return sorted(set(node_ids))


def _reachable(start: Iterable[str], adjacency: dict[str, list[str]]) -> set[str]:
    seen: set[str] = set()
    pending = deque(start)
    while pending:
        node_id = pending.popleft()
        if node_id in seen:
            continue
        seen.add(node_id)
        pending.extend(adjacency.get(node_id, ()))
    return seen


def find_forward_loops(node_ids: set[str], connections: list[Connection]) -> set[str]:
    """
    Ids of loop edges that point forward.

    A loop edge is a back edge when its source can be reached from its
    target over plain flow edges (a self-loop included). Any other loop edge
    between known nodes, like ``A --loop--> B`` with nothing leading from B
    back to A, points forward: it gates its target like a plain flow edge and
    the target repeats itself.
    """
    adjacency: dict[str, list[str]] = {}
    loops: list[FlowConnection] = []
    for conn in connections:
        if not isinstance(conn, FlowConnection):
            continue
        if conn.source_node_id not in node_ids or conn.target_node_id not in node_ids:
            continue
        if conn.is_loop:
            loops.append(conn)
        else:
            adjacency.setdefault(conn.source_node_id, []).append(conn.target_node_id)

    return {
        edge.id
        for edge in loops
        if edge.source_node_id not in _reachable([edge.target_node_id], adjacency)
    }


def find_entry_nodes(
    nodes: Iterable[RoutineNode], connections: Iterable[Connection]
) -> list[str]:
    """Nodes with no incoming flow edge other than a back edge, in stable order."""
    node_ids = {node.id for node in nodes}
    conn_list = list(connections)
    forward_loops = find_forward_loops(node_ids, conn_list)
    has_incoming = {
        conn.target_node_id
        for conn in conn_list
        if isinstance(conn, FlowConnection)
        and (not conn.is_loop or conn.id in forward_loops)
    }
    return stable_order(node_ids - has_incoming)


@dataclass
class ExecutionGraph:
    """
    Adjacency representation of a routine.

    Flow adjacency excludes back edges: they live in ``loop_edges`` and only
    take part in scheduling through the loop controller. Forward loop edges
    are listed there too but also count as plain incoming flow edges of
    their target.
    """

    nodes: dict[str, RoutineNode]
    connections: list[Connection]
    routine_id: str = ""
    user_id: str = ""
    trigger_data: Any = None

    flow_out: dict[str, list[FlowConnection]] = field(default_factory=dict)
    flow_in: dict[str, list[FlowConnection]] = field(default_factory=dict)
    data_in: dict[str, list[DataConnection]] = field(default_factory=dict)
    loop_edges: list[FlowConnection] = field(default_factory=list)
    loop_bodies: dict[str, frozenset[str]] = field(default_factory=dict)
    forward_loop_ids: set[str] = field(default_factory=set)

    duplicate_node_ids: list[str] = field(default_factory=list)
    duplicate_connection_ids: list[str] = field(default_factory=list)
    node_order: list[str] = field(default_factory=list)

    @classmethod
    def from_spec(cls, spec: RoutineSpec) -> "ExecutionGraph":
        return build_graph(
            spec.nodes,
            spec.connections,
            routine_id=spec.routine_id,
            user_id=spec.user_id,
            trigger_data=spec.trigger_data,
        )

    def to_spec(self) -> RoutineSpec:
        """Convert back to the routine definition, preserving input order."""
        return RoutineSpec(
            routine_id=self.routine_id,
            user_id=self.user_id,
            nodes=[self.nodes[node_id] for node_id in self.node_order],
            connections=list(self.connections),
            trigger_data=self.trigger_data,
        )

    def get_node(self, node_id: str) -> RoutineNode | None:
        return self.nodes.get(node_id)

    @property
    def node_ids(self) -> list[str]:
        return stable_order(self.nodes)

    @property
    def flow_connections(self) -> list[FlowConnection]:
        return [c for c in self.connections if isinstance(c, FlowConnection)]

    @property
    def data_connections(self) -> list[DataConnection]:
        return [c for c in self.connections if isinstance(c, DataConnection)]

    def outgoing_flow(self, node_id: str) -> list[FlowConnection]:
        """All outgoing flow edges of a node, loop edges included."""
        return self.flow_out.get(node_id, [])

    def incoming_flow(self, node_id: str) -> list[FlowConnection]:
        """Incoming flow edges of a node that gate it (everything but back edges)."""
        return self.flow_in.get(node_id, [])

    def is_back_edge(self, edge: FlowConnection) -> bool:
        return edge.is_loop and edge.id not in self.forward_loop_ids

    def forward_loops_into(self, node_id: str) -> list[FlowConnection]:
        """Forward loop edges whose target is node_id."""
        return [
            edge
            for edge in self.flow_in.get(node_id, [])
            if edge.is_loop and edge.id in self.forward_loop_ids
        ]

    def incoming_data(self, node_id: str) -> list[DataConnection]:
        return self.data_in.get(node_id, [])

    def flow_handles(self, node_id: str) -> list[str]:
        """Distinct signal names the node's outgoing flow edges listen for."""
        return stable_order(edge.source_handle for edge in self.outgoing_flow(node_id))

    def entry_nodes(self) -> list[str]:
        return find_entry_nodes(self.nodes.values(), self.connections)

    def successors(self, node_id: str) -> list[str]:
        """Targets of flow edges leaving node_id, back edges excluded."""
        return stable_order(
            edge.target_node_id
            for edge in self.outgoing_flow(node_id)
            if not self.is_back_edge(edge) and edge.target_node_id in self.nodes
        )

    def flow_adjacency(self) -> dict[str, list[str]]:
        return {node_id: self.successors(node_id) for node_id in self.nodes}

    def reachable_from(self, start: Iterable[str]) -> set[str]:
        """Forward closure over flow edges other than back edges, start nodes included."""
        return _reachable(start, self.flow_adjacency())

    def ancestors_of(self, node_id: str) -> set[str]:
        """Nodes with a flow path into node_id that uses no back edge (node_id excluded)."""
        reverse: dict[str, list[str]] = {}
        for target, edges in self.flow_in.items():
            reverse[target] = [e.source_node_id for e in edges]
        found = _reachable([node_id], reverse)
        found.discard(node_id)
        return found

    def loop_body(self, edge_id: str) -> frozenset[str]:
        return self.loop_bodies.get(edge_id, frozenset())


def _compute_loop_body(graph: ExecutionGraph, edge: FlowConnection) -> frozenset[str]:
    # Nodes on a forward path target -> ... -> source, plus the target itself
    forward = graph.reachable_from([edge.target_node_id])
    if edge.source_node_id not in forward:
        return frozenset({edge.target_node_id})
    backward = graph.ancestors_of(edge.source_node_id) | {edge.source_node_id}
    return frozenset((forward & backward) | {edge.target_node_id})


def build_graph(
    nodes: Iterable[RoutineNode],
    connections: Iterable[Connection],
    routine_id: str = "",
    user_id: str = "",
    trigger_data: Any = None,
) -> ExecutionGraph:
    """
    Build the adjacency representation of a routine.

    Never raises: connections that point at unknown nodes stay in the edge
    list (so the validator can report them) but are left out of adjacency.
    """
    node_map: dict[str, RoutineNode] = {}
    node_order: list[str] = []
    duplicate_nodes: list[str] = []
    for node in nodes:
        if node.id in node_map:
            duplicate_nodes.append(node.id)
            continue
        node_map[node.id] = node
        node_order.append(node.id)

    conn_list = list(connections)
    seen_conn_ids: set[str] = set()
    duplicate_conns: list[str] = []
    for conn in conn_list:
        if conn.id in seen_conn_ids:
            duplicate_conns.append(conn.id)
        seen_conn_ids.add(conn.id)

    graph = ExecutionGraph(
        nodes=node_map,
        connections=conn_list,
        routine_id=routine_id,
        user_id=user_id,
        trigger_data=trigger_data,
        duplicate_node_ids=stable_order(duplicate_nodes),
        duplicate_connection_ids=stable_order(duplicate_conns),
        node_order=node_order,
        forward_loop_ids=find_forward_loops(set(node_map), conn_list),
    )

    for conn in conn_list:
        if conn.source_node_id not in node_map or conn.target_node_id not in node_map:
            continue
        if isinstance(conn, DataConnection):
            graph.data_in.setdefault(conn.target_node_id, []).append(conn)
            continue
        graph.flow_out.setdefault(conn.source_node_id, []).append(conn)
        if conn.is_loop:
            graph.loop_edges.append(conn)
        if not graph.is_back_edge(conn):
            graph.flow_in.setdefault(conn.target_node_id, []).append(conn)

    for edge in graph.loop_edges:
        graph.loop_bodies[edge.id] = _compute_loop_body(graph, edge)

    return graph


def topological_order(graph: ExecutionGraph) -> tuple[list[str], list[str]]:
    """
    Kahn's algorithm over flow edges, back edges excluded.

    Returns (order, residual). The ready queue is kept sorted so the order is
    deterministic. Residual holds the node ids left on a cycle, in stable
    order; an empty residual means the flow subgraph is acyclic.
    """
    in_degree = {node_id: 0 for node_id in graph.nodes}
    for node_id in graph.nodes:
        for successor in graph.successors(node_id):
            in_degree[successor] += 1

    ready = stable_order(n for n, degree in in_degree.items() if degree == 0)
    order: list[str] = []
    while ready:
        node_id = ready.pop(0)
        order.append(node_id)
        released = []
        for successor in graph.successors(node_id):
            in_degree[successor] -= 1
            if in_degree[successor] == 0:
                released.append(successor)
        if released:
            ready = stable_order([*ready, *released])

    residual = stable_order(set(graph.nodes) - set(order))
    return order, residual
