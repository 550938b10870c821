"""
Wavefront Scheduler - Drives a routine graph to completion.

The scheduler keeps a queue of candidate nodes. Each round it picks every
queued node that is ready, runs that wave concurrently, and then follows
the signals the wave emitted to queue the next candidates:

    queue = entry nodes
    while queue:
        ready  = nodes whose predecessors have all settled
        run ready concurrently (wait for all siblings)
        follow matching flow edges, drive loop edges through the loop controller

Readiness looks at each incoming flow edge of a queued node (back edges aside):

- activated: the source ran and emitted the edge's signal
- dead:      the source ran with another signal (or failed), or it can no
             longer run because nothing queued leads to it
- pending:   the source has not run but still can

A node is ready when nothing is pending and something is activated. A node
whose edges are all dead sits on a branch that was not taken and is pruned
from the queue. Only when nothing is ready and nothing can be pruned is the
run deadlocked.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from enum import StrEnum

from routine_engine.errors import DeadlockError, ExecutionLimitError
from routine_engine.graph.edge import DEFAULT_SIGNAL, FlowConnection
from routine_engine.graph.model import ExecutionGraph, stable_order
from routine_engine.runtime.execution_state import (
    ExecutionState,
    NodeExecutionResult,
    NodeStatus,
)
from routine_engine.runtime.loop_controller import LoopController
from routine_engine.runtime.node_executor import NodeExecutorAdapter

logger = logging.getLogger(__name__)


class SchedulerStatus(StrEnum):
    INITIALIZING = "initializing"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    DEADLOCKED = "deadlocked"


class EdgeState(StrEnum):
    ACTIVATED = "activated"
    DEAD = "dead"
    PENDING = "pending"


@dataclass
class NextNodes:
    """Where a node's emitted signal leads."""

    signal: str
    next_nodes: list[str] = field(default_factory=list)
    loop_edges: list[FlowConnection] = field(default_factory=list)
    # Loop edges leaving the node that the signal did not match
    unmatched_loop_edges: list[FlowConnection] = field(default_factory=list)


def determine_next_nodes(
    node_id: str, result: NodeExecutionResult | None, graph: ExecutionGraph
) -> NextNodes:
    """
    Split a node's outgoing flow edges by the signal it emitted.

    Back edges go to the loop controller. A matched forward loop edge leads
    to its target like a plain edge. Failed nodes lead nowhere.
    """
    if result is not None and result.status == NodeStatus.ERROR:
        return NextNodes(signal=result.signal)

    signal = result.signal if result is not None else DEFAULT_SIGNAL
    outcome = NextNodes(signal=signal)
    targets = []
    for edge in graph.outgoing_flow(node_id):
        back_edge = graph.is_back_edge(edge)
        if not edge.matches(signal):
            if back_edge:
                outcome.unmatched_loop_edges.append(edge)
            continue
        if back_edge:
            outcome.loop_edges.append(edge)
        else:
            targets.append(edge.target_node_id)
    outcome.next_nodes = stable_order(targets)
    return outcome


def classify_edge(
    edge: FlowConnection, state: ExecutionState, live: set[str]
) -> EdgeState:
    source = edge.source_node_id
    if state.is_executed(source):
        result = state.get_node_result(source)
        if result is not None and result.status != NodeStatus.ERROR and edge.matches(result.signal):
            return EdgeState.ACTIVATED
        return EdgeState.DEAD
    if source in live:
        return EdgeState.PENDING
    return EdgeState.DEAD


@dataclass
class ReadySet:
    ready: list[str] = field(default_factory=list)
    pruned: list[str] = field(default_factory=list)
    waiting: list[str] = field(default_factory=list)


def find_ready_nodes(
    queue: list[str], graph: ExecutionGraph, state: ExecutionState
) -> ReadySet:
    """Partition the queue into ready, prunable and still-waiting nodes."""
    ordered = stable_order(queue)
    # Anything a queued node can still lead to may yet run
    live = graph.reachable_from(ordered)

    outcome = ReadySet()
    for node_id in ordered:
        edges = graph.incoming_flow(node_id)
        if not edges:
            outcome.ready.append(node_id)
            continue
        states = {classify_edge(edge, state, live) for edge in edges}
        if EdgeState.PENDING in states:
            outcome.waiting.append(node_id)
        elif EdgeState.ACTIVATED in states:
            outcome.ready.append(node_id)
        else:
            outcome.pruned.append(node_id)
    return outcome


class WavefrontScheduler:
    """
    Runs one routine graph.

    Args:
        graph: Validated execution graph
        adapter: Executes single nodes
        state: Execution state to fill (a fresh one when omitted)
        loop_controller: Loop state machine (built from the graph when omitted)
        max_concurrent_nodes: Cap on nodes in flight within a wave (None: no cap)
        max_node_executions: Total node attempts allowed (None: unlimited)
    """

    def __init__(
        self,
        graph: ExecutionGraph,
        adapter: NodeExecutorAdapter,
        state: ExecutionState | None = None,
        loop_controller: LoopController | None = None,
        max_concurrent_nodes: int | None = None,
        max_node_executions: int | None = None,
    ):
        self.graph = graph
        self.adapter = adapter
        self.state = state if state is not None else ExecutionState()
        self.loops = loop_controller or LoopController(graph)
        self.max_concurrent_nodes = max_concurrent_nodes
        self.max_node_executions = max_node_executions
        self.status = SchedulerStatus.INITIALIZING
        self.waves = 0
        self.pruned: list[str] = []
        self.failed_node_id: str | None = None
        self._executions = 0

    async def run(self) -> ExecutionState:
        """
        Execute the graph until the queue drains.

        Raises:
            NodeExecutionError: a node failed (siblings of its wave finished first)
            DeadlockError: queued nodes can never become ready
            ExecutionLimitError: max_node_executions exceeded
        """
        semaphore = (
            asyncio.Semaphore(self.max_concurrent_nodes) if self.max_concurrent_nodes else None
        )
        queue = self.graph.entry_nodes()
        self.status = SchedulerStatus.RUNNING
        logger.info(f"🚀 Starting routine {self.graph.routine_id or '<unnamed>'}")
        logger.info(f"   Entry nodes: {', '.join(queue)}")

        try:
            while queue:
                ready_set = find_ready_nodes(queue, self.graph, self.state)

                if ready_set.pruned:
                    logger.info(
                        f"   ✂ Not taken: {', '.join(ready_set.pruned)}",
                        extra={"event": "nodes_pruned"},
                    )
                    self.pruned.extend(ready_set.pruned)
                    queue = [n for n in queue if n not in ready_set.pruned]

                if not ready_set.ready:
                    if ready_set.pruned:
                        continue
                    self.status = SchedulerStatus.DEADLOCKED
                    raise DeadlockError(ready_set.waiting)

                await self._run_wave(ready_set.ready, semaphore)
                queue = [n for n in queue if n not in ready_set.ready]
                queue.extend(n for n in self._advance(ready_set.ready) if n not in queue)
        except DeadlockError:
            raise
        except Exception:
            self.status = SchedulerStatus.FAILED
            raise

        self.status = SchedulerStatus.COMPLETED
        stats = self.state.get_stats()
        logger.info(
            f"✓ Routine completed: {stats['total_executions']} execution(s) in {self.waves} wave(s)"
        )
        return self.state

    async def _run_wave(self, ready: list[str], semaphore: asyncio.Semaphore | None) -> None:
        if self.max_node_executions is not None:
            if self._executions + len(ready) > self.max_node_executions:
                raise ExecutionLimitError(self.max_node_executions)
        self._executions += len(ready)
        self.waves += 1
        logger.info(
            f"⑂ Wave {self.waves}: {', '.join(ready)}",
            extra={"event": "wave_started", "wave": self.waves},
        )

        async def run_node(node_id: str) -> NodeExecutionResult:
            if semaphore is None:
                return await self.adapter.execute(node_id, self.graph, self.state, self.loops)
            async with semaphore:
                return await self.adapter.execute(node_id, self.graph, self.state, self.loops)

        # Wait for every sibling, then surface the first failure in node order
        outcomes = await asyncio.gather(*(run_node(n) for n in ready), return_exceptions=True)
        for node_id in ready:
            self.state.mark_executed(node_id)

        for node_id, outcome in zip(ready, outcomes, strict=True):
            if isinstance(outcome, BaseException):
                self.failed_node_id = node_id
                raise outcome

    def _advance(self, executed: list[str]) -> list[str]:
        """Follow the signals of a finished wave. Returns the nodes to queue."""
        new_wave: list[str] = []
        for node_id in executed:
            result = self.state.get_node_result(node_id)
            next_nodes = determine_next_nodes(node_id, result, self.graph)

            for edge in next_nodes.unmatched_loop_edges:
                self.loops.stop_on_condition(edge, self.state)

            for edge in next_nodes.loop_edges:
                if self._continue_loop(edge, result):
                    new_wave.append(edge.target_node_id)

            # A forward loop target repeats itself once its gate has opened
            for edge in self.graph.forward_loops_into(node_id):
                if classify_edge(edge, self.state, set()) != EdgeState.ACTIVATED:
                    continue
                if self._continue_loop(edge, result):
                    new_wave.append(node_id)

            for target in next_nodes.next_nodes:
                if not self.state.is_executed(target):
                    new_wave.append(target)
        return stable_order(new_wave)

    def _continue_loop(self, edge: FlowConnection, result: NodeExecutionResult | None) -> bool:
        config = edge.loop_config
        if config is None:
            return False
        go_again = self.loops.update_loop_state(
            edge.id,
            edge.target_node_id,
            config.max_iterations,
            config.accumulator_fields,
            result.outputs if result is not None else None,
            self.state,
        )
        if not go_again:
            return False
        for node_id in self.graph.loop_body(edge.id):
            self.state.unmark_executed(node_id)
        reset = self.loops.reset_nested_loops(edge.id, self.state)
        if reset:
            logger.debug(f"Reset nested loops {reset} for another pass of {edge.id}")
        return True
