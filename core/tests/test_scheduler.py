"""
Tests for the wavefront scheduler.

Covers:
- linear, branching, joining and parallel graphs
- bounded loops (max iterations, stop on condition, loop context)
- readiness: waiting, pruning and deadlock
- wait-all failure handling, the execution limit and the concurrency cap
"""

import pytest

from routine_engine.errors import DeadlockError, ExecutionLimitError, NodeExecutionError
from routine_engine.graph import (
    DataConnection,
    FlowConnection,
    LoopConfig,
    RoutineNode,
    build_graph,
)
from routine_engine.runtime import (
    ExecutionState,
    LoopController,
    LoopPhase,
    NodeExecutionResult,
    NodeExecutorAdapter,
    NodeStatus,
    SchedulerStatus,
    WavefrontScheduler,
    determine_next_nodes,
    find_ready_nodes,
)

# === HELPER FUNCTIONS ===


def make_graph(node_ids, connections, disabled=()):
    nodes = [
        RoutineNode(id=node_id, plugin_id="test", enabled=node_id not in disabled)
        for node_id in node_ids
    ]
    return build_graph(nodes, connections, routine_id="routine-1", user_id="user-1")


def flow(source, target, handle="default", **kwargs):
    return FlowConnection(
        id=kwargs.pop("id", f"{source}-{target}-{handle}"),
        source_node_id=source,
        target_node_id=target,
        source_handle=handle,
        **kwargs,
    )


def loop(source, target, max_iterations, handle="default", fields=()):
    return flow(
        source,
        target,
        handle,
        id=f"loop-{source}-{target}",
        loop_config=LoopConfig(max_iterations=max_iterations, accumulator_fields=list(fields)),
    )


def signal(name, **data):
    return {"signal": name, "data": data}


def path_of(state):
    return [f"{e.node_id}#{e.run_index}" for e in state.execution_path]


async def run(graph, executor, **kwargs):
    state = ExecutionState("exec-test")
    scheduler = WavefrontScheduler(graph, NodeExecutorAdapter(executor), state=state, **kwargs)
    await scheduler.run()
    return scheduler, state


# ---- Basic shapes ----


@pytest.mark.asyncio
async def test_linear_graph(make_executor):
    graph = make_graph(["a", "b", "c"], [flow("a", "b"), flow("b", "c")])
    executor = make_executor()

    scheduler, state = await run(graph, executor)

    assert path_of(state) == ["a#0", "b#0", "c#0"]
    assert scheduler.status == SchedulerStatus.COMPLETED
    assert scheduler.waves == 3
    assert state.executed == frozenset({"a", "b", "c"})


@pytest.mark.asyncio
async def test_parallel_entries_run_in_one_wave(make_executor):
    graph = make_graph(["c", "a", "b"], [])
    executor = make_executor()

    scheduler, state = await run(graph, executor)

    assert scheduler.waves == 1
    assert path_of(state) == ["a#0", "b#0", "c#0"]


@pytest.mark.asyncio
async def test_branch_follows_emitted_signal(make_executor):
    graph = make_graph(
        ["check", "yes", "no"],
        [flow("check", "yes", "true"), flow("check", "no", "false")],
    )
    executor = make_executor({"check": signal("true", ok=True)})

    scheduler, state = await run(graph, executor)

    assert path_of(state) == ["check#0", "yes#0"]
    assert executor.execute_count("no") == 0
    assert state.get_node_result("check").signal == "true"
    assert state.get_output("check") == {"ok": True}
    assert scheduler.pruned == []


@pytest.mark.asyncio
async def test_branch_from_single_handle_output(make_executor):
    graph = make_graph(
        ["check", "yes", "no"],
        [flow("check", "yes", "true"), flow("check", "no", "false")],
    )
    executor = make_executor({"check": {"false": {"result": False}}})

    _, state = await run(graph, executor)

    assert path_of(state) == ["check#0", "no#0"]


@pytest.mark.asyncio
async def test_unmatched_signal_ends_the_branch(make_executor):
    graph = make_graph(["check", "yes"], [flow("check", "yes", "true")])
    executor = make_executor({"check": signal("maybe")})

    scheduler, state = await run(graph, executor)

    assert path_of(state) == ["check#0"]
    assert scheduler.status == SchedulerStatus.COMPLETED


@pytest.mark.asyncio
async def test_join_waits_for_slower_branch(make_executor):
    graph = make_graph(
        ["start", "a", "b", "c", "join"],
        [
            flow("start", "a"),
            flow("start", "b"),
            flow("a", "join"),
            flow("b", "c"),
            flow("c", "join"),
        ],
    )
    executor = make_executor()

    scheduler, state = await run(graph, executor)

    assert path_of(state) == ["start#0", "a#0", "b#0", "c#0", "join#0"]
    assert executor.execute_count("join") == 1
    assert scheduler.waves == 4


@pytest.mark.asyncio
async def test_join_after_branch_not_taken(make_executor):
    graph = make_graph(
        ["check", "yes", "no", "join"],
        [
            flow("check", "yes", "true"),
            flow("check", "no", "false"),
            flow("yes", "join"),
            flow("no", "join"),
        ],
    )
    executor = make_executor({"check": signal("true")})

    _, state = await run(graph, executor)

    assert path_of(state) == ["check#0", "yes#0", "join#0"]


@pytest.mark.asyncio
async def test_disabled_node_passes_inputs_through(make_executor):
    graph = make_graph(
        ["a", "b", "c"],
        [
            flow("a", "b"),
            flow("b", "c"),
            DataConnection(id="a-b-data", source_node_id="a", target_node_id="b"),
            DataConnection(id="b-c-data", source_node_id="b", target_node_id="c"),
        ],
        disabled={"b"},
    )
    executor = make_executor({"a": {"price": 10}})

    _, state = await run(graph, executor)

    assert path_of(state) == ["a#0", "b#0", "c#0"]
    assert executor.execute_count("b") == 0
    assert state.get_node_result("b").status == NodeStatus.SKIPPED
    assert executor.inputs["c"] == [{"price": 10}]


# ---- Loops ----


@pytest.mark.asyncio
async def test_self_loop_runs_max_iterations_then_continues(make_executor):
    graph = make_graph(["a", "b", "c"], [flow("a", "b"), flow("b", "c"), loop("b", "b", 3)])
    executor = make_executor()

    _, state = await run(graph, executor)

    assert path_of(state) == ["a#0", "b#0", "b#1", "b#2", "c#0"]
    loop_state = LoopController().get_loop_state("loop-b-b", "b", state)
    assert loop_state.phase == LoopPhase.STOPPED_MAX_ITERATIONS


@pytest.mark.asyncio
async def test_loop_stops_when_source_emits_other_signal(make_executor):
    def check(config, inputs, context):
        return signal("loop" if context.run_index < 2 else "done")

    graph = make_graph(
        ["start", "fetch", "check", "report"],
        [
            flow("start", "fetch"),
            flow("fetch", "check"),
            flow("check", "report", "done"),
            loop("check", "fetch", 10, handle="loop"),
        ],
    )
    executor = make_executor({"check": check})

    _, state = await run(graph, executor)

    assert path_of(state) == [
        "start#0",
        "fetch#0",
        "check#0",
        "fetch#1",
        "check#1",
        "fetch#2",
        "check#2",
        "report#0",
    ]
    loop_state = LoopController().get_loop_state("loop-check-fetch", "fetch", state)
    assert loop_state.phase == LoopPhase.STOPPED_CONDITION
    assert loop_state.iteration == 2


@pytest.mark.asyncio
async def test_forward_loop_edge_runs_target_max_iterations(make_executor):
    graph = make_graph(["A", "B"], [loop("A", "B", 3)])
    executor = make_executor()

    scheduler, state = await run(graph, executor)

    assert graph.entry_nodes() == ["A"]
    assert path_of(state) == ["A#0", "B#0", "B#1", "B#2"]
    assert len(state.get_all_node_results("B")) == 3
    assert executor.execute_count("A") == 1
    assert scheduler.waves == 4


@pytest.mark.asyncio
async def test_forward_loop_target_waits_for_source_then_feeds_successor(make_executor):
    graph = make_graph(["a", "b", "c"], [loop("a", "b", 2), flow("b", "c")])
    executor = make_executor()

    _, state = await run(graph, executor)

    assert path_of(state) == ["a#0", "b#0", "b#1", "c#0"]
    assert [c.loop_iteration for c in executor.contexts["b"]] == [None, 1]
    loop_state = LoopController().get_loop_state("loop-a-b", "b", state)
    assert loop_state.phase == LoopPhase.STOPPED_MAX_ITERATIONS


@pytest.mark.asyncio
async def test_forward_loop_target_skipped_when_source_takes_other_branch(make_executor):
    graph = make_graph(["a", "b", "c"], [loop("a", "b", 3), flow("a", "c", "other")])
    executor = make_executor({"a": signal("other")})

    _, state = await run(graph, executor)

    assert path_of(state) == ["a#0", "c#0"]
    assert executor.execute_count("b") == 0
    assert LoopController().get_loop_state("loop-a-b", "b", state) is None


@pytest.mark.asyncio
async def test_loop_context_and_accumulator(make_executor):
    def collect(config, inputs, context):
        items = list((context.loop_accumulator or {}).get("items", []))
        return {"items": [*items, context.run_index]}

    graph = make_graph(
        ["start", "body", "after"],
        [
            flow("start", "body"),
            flow("body", "after"),
            loop("body", "body", 3, fields=["items"]),
        ],
    )
    executor = make_executor({"body": collect})

    _, state = await run(graph, executor)

    contexts = executor.contexts["body"]
    assert [c.loop_iteration for c in contexts] == [None, 1, 2]
    assert [c.loop_accumulator for c in contexts] == [None, {"items": [0]}, {"items": [0, 1]}]
    assert state.get_output("body") == {"items": [0, 1, 2]}
    assert state.get_all_node_results("body")[0].iteration is None
    assert state.get_all_node_results("body")[2].iteration == 2


@pytest.mark.asyncio
async def test_loop_body_reruns_every_node_on_the_path(make_executor):
    graph = make_graph(
        ["start", "fetch", "parse", "check", "done"],
        [
            flow("start", "fetch"),
            flow("fetch", "parse"),
            flow("parse", "check"),
            flow("check", "done"),
            loop("check", "fetch", 2),
        ],
    )
    executor = make_executor()

    _, state = await run(graph, executor)

    assert path_of(state) == [
        "start#0",
        "fetch#0",
        "parse#0",
        "check#0",
        "fetch#1",
        "parse#1",
        "check#1",
        "done#0",
    ]
    assert executor.execute_count("start") == 1


@pytest.mark.asyncio
async def test_nested_loops_reset_inner_loop(make_executor):
    graph = make_graph(
        ["a", "b", "c", "d"],
        [
            flow("a", "b"),
            flow("b", "c"),
            flow("c", "d"),
            loop("c", "b", 2),
            loop("d", "a", 2),
        ],
    )
    executor = make_executor()

    await run(graph, executor)

    # Outer loop passes twice; each pass runs the inner loop twice
    assert executor.execute_count("a") == 2
    assert executor.execute_count("b") == 4
    assert executor.execute_count("c") == 4
    assert executor.execute_count("d") == 2


# ---- Readiness ----


def test_determine_next_nodes_splits_loop_edges():
    graph = make_graph(
        ["a", "b", "c"],
        [flow("a", "b"), flow("a", "c", "other"), loop("a", "a", 3, handle="again")],
    )
    result = NodeExecutionResult(status=NodeStatus.COMPLETED)

    outcome = determine_next_nodes("a", result, graph)

    assert outcome.signal == "default"
    assert outcome.next_nodes == ["b"]
    assert outcome.loop_edges == []
    assert [e.id for e in outcome.unmatched_loop_edges] == ["loop-a-a"]


def test_failed_node_leads_nowhere():
    graph = make_graph(["a", "b"], [flow("a", "b")])
    result = NodeExecutionResult(status=NodeStatus.ERROR)

    assert determine_next_nodes("a", result, graph).next_nodes == []


def test_find_ready_nodes_prunes_dead_branches():
    graph = make_graph(["x", "y", "c"], [flow("x", "c", "true"), flow("y", "c", "true")])
    state = ExecutionState()
    for node_id in ("x", "y"):
        state.add_result(node_id, NodeExecutionResult(status=NodeStatus.COMPLETED, signal="false"))
        state.mark_executed(node_id)

    ready_set = find_ready_nodes(["c"], graph, state)

    assert ready_set.pruned == ["c"]
    assert ready_set.ready == []


def test_find_ready_nodes_waits_for_live_sources():
    graph = make_graph(["x", "y", "c"], [flow("x", "c"), flow("y", "c")])
    state = ExecutionState()
    state.add_result("x", NodeExecutionResult(status=NodeStatus.COMPLETED))
    state.mark_executed("x")

    ready_set = find_ready_nodes(["c", "y"], graph, state)

    assert ready_set.ready == ["y"]
    assert ready_set.waiting == ["c"]


@pytest.mark.asyncio
async def test_queued_node_with_only_dead_edges_is_pruned(make_executor):
    graph = make_graph(["a", "b"], [flow("a", "b", "go")])
    state = ExecutionState()
    state.add_result("a", NodeExecutionResult(status=NodeStatus.COMPLETED, signal="stop"))
    state.mark_executed("a")
    scheduler = WavefrontScheduler(graph, NodeExecutorAdapter(make_executor()), state=state)

    # Start from b as if an earlier wave had queued it
    graph.entry_nodes = lambda: ["b"]
    await scheduler.run()

    assert scheduler.pruned == ["b"]
    assert scheduler.status == SchedulerStatus.COMPLETED


@pytest.mark.asyncio
async def test_deadlock_is_reported(make_executor):
    graph = make_graph(["e", "a", "b"], [flow("e", "a"), flow("a", "b"), flow("b", "a")])
    scheduler = WavefrontScheduler(graph, NodeExecutorAdapter(make_executor()))

    with pytest.raises(DeadlockError) as exc_info:
        await scheduler.run()

    assert exc_info.value.stuck_node_ids == ["a"]
    assert scheduler.status == SchedulerStatus.DEADLOCKED
    assert [e.node_id for e in scheduler.state.execution_path] == ["e"]


# ---- Failures and limits ----


@pytest.mark.asyncio
async def test_failure_waits_for_siblings(make_executor):
    graph = make_graph(
        ["start", "bad", "slow", "after"],
        [flow("start", "bad"), flow("start", "slow"), flow("slow", "after")],
    )
    executor = make_executor({"bad": ValueError("boom")}, delays={"slow": 0.05})
    scheduler = WavefrontScheduler(graph, NodeExecutorAdapter(executor))

    with pytest.raises(NodeExecutionError) as exc_info:
        await scheduler.run()

    assert exc_info.value.node_id == "bad"
    assert exc_info.value.error.message == "boom"
    assert isinstance(exc_info.value.__cause__, ValueError)
    assert scheduler.status == SchedulerStatus.FAILED
    assert scheduler.failed_node_id == "bad"
    assert scheduler.state.get_node_result("slow").status == NodeStatus.COMPLETED
    assert scheduler.state.get_node_result("bad").status == NodeStatus.ERROR
    assert executor.execute_count("after") == 0


@pytest.mark.asyncio
async def test_first_failure_in_node_order_is_raised(make_executor):
    graph = make_graph(["start", "x", "y"], [flow("start", "x"), flow("start", "y")])
    executor = make_executor(
        {"x": RuntimeError("x failed"), "y": RuntimeError("y failed")},
        delays={"x": 0.05},
    )
    scheduler = WavefrontScheduler(graph, NodeExecutorAdapter(executor))

    with pytest.raises(NodeExecutionError) as exc_info:
        await scheduler.run()

    assert exc_info.value.node_id == "x"
    assert len(scheduler.state.get_errors()) == 2


@pytest.mark.asyncio
async def test_execution_limit(make_executor):
    graph = make_graph(["a"], [loop("a", "a", 1000)])
    executor = make_executor()
    scheduler = WavefrontScheduler(
        graph, NodeExecutorAdapter(executor), max_node_executions=5
    )

    with pytest.raises(ExecutionLimitError) as exc_info:
        await scheduler.run()

    assert exc_info.value.limit == 5
    assert executor.execute_count("a") == 5
    assert scheduler.status == SchedulerStatus.FAILED


@pytest.mark.asyncio
async def test_concurrency_cap(make_executor):
    graph = make_graph(["a", "b", "c", "d"], [])
    executor = make_executor(delays={n: 0.02 for n in "abcd"})

    scheduler, _ = await run(graph, executor, max_concurrent_nodes=2)

    assert executor.peak_in_flight == 2
    assert scheduler.waves == 1


@pytest.mark.asyncio
async def test_runs_are_deterministic(make_executor):
    connections = [
        flow("start", "b"),
        flow("start", "a"),
        flow("a", "join"),
        flow("b", "join"),
        loop("join", "join", 2),
    ]
    paths = []
    for _ in range(3):
        graph = make_graph(["start", "b", "a", "join"], connections)
        _, state = await run(graph, make_executor())
        paths.append(path_of(state))

    assert paths[0] == ["start#0", "a#0", "b#0", "join#0", "join#1"]
    assert paths[0] == paths[1] == paths[2]
