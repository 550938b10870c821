"""
Tests for RoutineExecutor: a run from definition to terminal status.

Covers the sink call sequence, validation failures (no sink records),
node failures with partial paths, raise_on_failure, trigger types and
tolerance of a broken sink.
"""

import re
from unittest.mock import AsyncMock

import pytest

from routine_engine import (
    EngineConfig,
    ExecutionResult,
    InMemoryExecutionSink,
    PluginRegistry,
    RoutineExecutor,
    RoutineSpec,
)
from routine_engine.errors import GraphValidationError, NodeExecutionError
from routine_engine.graph import IssueType
from routine_engine.observability import get_trace_context
from routine_engine.runtime import SchedulerStatus
from routine_engine.runtime.routine_executor import generate_execution_id, trigger_type_of
from routine_engine.schemas import NodeRunStatus, PathEntry, RunStatus, TriggerType

# === HELPER FUNCTIONS ===


def make_registry() -> PluginRegistry:
    registry = PluginRegistry()

    @registry.plugin("static-data")
    async def static_data(config, inputs, context):
        return dict(config.get("data", {}))

    @registry.plugin("threshold")
    async def threshold(config, inputs, context):
        above = inputs.get("value", 0) > config["limit"]
        return {"true" if above else "false": {"value": inputs.get("value")}}

    @registry.plugin("echo")
    async def echo(config, inputs, context):
        return {"inputs": dict(inputs), "trace": get_trace_context()}

    @registry.plugin("explode")
    async def explode(config, inputs, context):
        raise ValueError("price feed unavailable")

    return registry


def price_routine(price: float = 142.5, alert_plugin: str = "echo", **extra) -> dict:
    return {
        "routineId": "price-alert",
        "userId": "user-1",
        "nodes": [
            {"id": "price", "pluginId": "static-data", "config": {"data": {"price": price}}},
            {"id": "check", "pluginId": "threshold", "config": {"limit": 100}},
            {"id": "alert", "pluginId": alert_plugin},
            {"id": "ignore", "pluginId": "echo"},
        ],
        "connections": [
            {"id": "price-check", "type": "flow", "sourceNodeId": "price", "targetNodeId": "check"},
            {
                "id": "check-alert",
                "type": "flow",
                "sourceNodeId": "check",
                "targetNodeId": "alert",
                "sourceHandle": "true",
            },
            {
                "id": "check-ignore",
                "type": "flow",
                "sourceNodeId": "check",
                "targetNodeId": "ignore",
                "sourceHandle": "false",
            },
            {
                "id": "price-data",
                "type": "data",
                "sourceNodeId": "price",
                "targetNodeId": "check",
                "sourceHandle": "price",
                "targetHandle": "value",
            },
            {
                "id": "check-data",
                "type": "data",
                "sourceNodeId": "check",
                "targetNodeId": "alert",
                "sourceHandle": "true",
            },
        ],
        **extra,
    }


# ---- Successful runs ----


@pytest.mark.asyncio
async def test_successful_run_is_recorded():
    sink = InMemoryExecutionSink()
    executor = RoutineExecutor(make_registry(), sink=sink)

    result = await executor.execute(price_routine(), execution_id="exec-1", run_id="run-1")

    assert result.success
    assert result.status == RunStatus.COMPLETED
    assert result.scheduler_status == SchedulerStatus.COMPLETED
    assert result.executed_node_ids == ["price", "check", "alert"]
    assert result.output_of("alert")["inputs"] == {"value": 142.5}
    assert result.output_of("ignore") is None

    record = await sink.get_execution("exec-1")
    assert record.status == RunStatus.COMPLETED
    assert record.routine_id == "price-alert"
    assert record.user_id == "user-1"
    assert record.run_id == "run-1"
    assert record.started_at is not None
    assert record.completed_at is not None
    assert record.error is None
    assert record.execution_path == [
        PathEntry(node_id="price", run_index=0),
        PathEntry(node_id="check", run_index=0),
        PathEntry(node_id="alert", run_index=0),
    ]
    assert [r.node_id for r in record.node_results] == ["price", "check", "alert"]
    assert all(r.status == NodeRunStatus.COMPLETED for r in record.node_results)


@pytest.mark.asyncio
async def test_false_branch():
    result = await RoutineExecutor(make_registry()).execute(price_routine(price=50))

    assert result.executed_node_ids == ["price", "check", "ignore"]


@pytest.mark.asyncio
async def test_accepts_model_and_generates_ids():
    spec = RoutineSpec.model_validate(price_routine())

    result = await RoutineExecutor(make_registry()).execute(spec)

    assert re.fullmatch(r"exec_\d{8}_\d{6}_[0-9a-f]{8}", result.execution_id)
    assert result.routine_id == "price-alert"


@pytest.mark.asyncio
async def test_trace_context_reaches_plugins():
    result = await RoutineExecutor(make_registry()).execute(
        price_routine(), execution_id="exec-trace"
    )

    trace = result.output_of("alert")["trace"]
    assert trace["execution_id"] == "exec-trace"
    assert trace["routine_id"] == "price-alert"
    assert trace["node_id"] == "alert"
    assert get_trace_context() == {}


@pytest.mark.asyncio
async def test_trigger_type_comes_from_trigger_data():
    sink = InMemoryExecutionSink()
    routine = price_routine(triggerData={"triggerType": "webhook", "body": {"id": 1}})

    await RoutineExecutor(make_registry(), sink=sink).execute(routine, execution_id="exec-w")

    record = await sink.get_execution("exec-w")
    assert record.trigger_type == TriggerType.WEBHOOK
    assert record.trigger_data == {"triggerType": "webhook", "body": {"id": 1}}


def test_trigger_type_of():
    assert trigger_type_of(None) == TriggerType.MANUAL
    assert trigger_type_of({"triggerType": "scheduled"}) == TriggerType.SCHEDULED
    assert trigger_type_of({"trigger_type": "event"}) == TriggerType.EVENT
    assert trigger_type_of({"triggerType": "carrier-pigeon"}) == TriggerType.MANUAL
    assert trigger_type_of(["not", "a", "dict"]) == TriggerType.MANUAL


def test_generate_execution_id_is_unique():
    assert generate_execution_id() != generate_execution_id()


def test_summary_is_json_friendly():
    result = ExecutionResult(
        success=True,
        status=RunStatus.COMPLETED,
        execution_id="exec-1",
        path=[PathEntry(node_id="a", run_index=0), PathEntry(node_id="a", run_index=1)],
    )

    summary = result.summary()

    assert summary["status"] == "completed"
    assert summary["executionId"] == "exec-1"
    assert summary["path"] == ["a#0", "a#1"]


# ---- Failures ----


@pytest.mark.asyncio
async def test_invalid_routine_fails_without_sink_records():
    sink = AsyncMock()
    routine = price_routine()
    routine["connections"].append(
        {"id": "broken", "type": "flow", "sourceNodeId": "alert", "targetNodeId": "ghost"}
    )

    result = await RoutineExecutor(make_registry(), sink=sink).execute(routine)

    assert not result.success
    assert result.status == RunStatus.FAILED
    assert result.path == []
    assert result.validation.of_type(IssueType.MISSING_NODE)
    assert "ghost" in result.error
    assert result.error_details.code == "validation_error"
    sink.create_execution.assert_not_called()
    sink.update_status.assert_not_called()


@pytest.mark.asyncio
async def test_unknown_plugin_fails_validation():
    result = await RoutineExecutor(make_registry()).execute(price_routine(alert_plugin="sms"))

    assert not result.success
    assert result.validation.of_type(IssueType.UNKNOWN_PLUGIN)


@pytest.mark.asyncio
async def test_invalid_routine_raises_when_requested():
    routine = price_routine()
    routine["connections"].append(
        {"id": "cycle", "type": "flow", "sourceNodeId": "alert", "targetNodeId": "check"}
    )

    with pytest.raises(GraphValidationError) as exc_info:
        await RoutineExecutor(make_registry()).execute(routine, raise_on_failure=True)

    assert exc_info.value.result.of_type(IssueType.CYCLE_DETECTED)


@pytest.mark.asyncio
async def test_node_failure_records_root_cause_and_partial_path():
    sink = InMemoryExecutionSink()
    executor = RoutineExecutor(make_registry(), sink=sink)

    result = await executor.execute(price_routine(alert_plugin="explode"), execution_id="exec-f")

    assert not result.success
    assert result.status == RunStatus.FAILED
    assert result.scheduler_status == SchedulerStatus.FAILED
    assert result.failed_node_id == "alert"
    assert result.error_details.message == "price feed unavailable"
    assert "price feed unavailable" in result.error
    assert result.executed_node_ids == ["price", "check", "alert"]

    record = await sink.get_execution("exec-f")
    assert record.status == RunStatus.FAILED
    assert record.error.message == "price feed unavailable"
    assert record.error.details["type"] == "ValueError"
    assert [e.node_id for e in record.execution_path] == ["price", "check", "alert"]
    failed = await sink.get_node_results("exec-f", "alert")
    assert [r.status for r in failed] == [NodeRunStatus.FAILED]


@pytest.mark.asyncio
async def test_node_failure_raises_after_recording_when_requested():
    sink = InMemoryExecutionSink()
    executor = RoutineExecutor(make_registry(), sink=sink)

    with pytest.raises(NodeExecutionError):
        await executor.execute(
            price_routine(alert_plugin="explode"), execution_id="exec-r", raise_on_failure=True
        )

    record = await sink.get_execution("exec-r")
    assert record.status == RunStatus.FAILED


@pytest.mark.asyncio
async def test_execution_limit_from_config():
    registry = make_registry()
    routine = {
        "routineId": "spin",
        "nodes": [{"id": "a", "pluginId": "echo"}],
        "connections": [
            {
                "id": "again",
                "sourceNodeId": "a",
                "targetNodeId": "a",
                "loopConfig": {"maxIterations": 1000},
            }
        ],
    }
    config = EngineConfig(max_node_executions=3)

    result = await RoutineExecutor(registry, config=config).execute(routine)

    assert not result.success
    assert result.error_details.code == "execution_limit"
    assert len(result.path) == 3


@pytest.mark.asyncio
async def test_broken_sink_never_aborts_the_run():
    sink = AsyncMock()
    sink.create_execution.side_effect = ConnectionError("db down")
    sink.update_status.side_effect = ConnectionError("db down")
    sink.store_node_result.side_effect = ConnectionError("db down")

    result = await RoutineExecutor(make_registry(), sink=sink).execute(price_routine())

    assert result.success
    assert result.executed_node_ids == ["price", "check", "alert"]
    assert sink.update_status.await_count == 2


@pytest.mark.asyncio
async def test_validate_without_running():
    executor = RoutineExecutor(make_registry())

    assert executor.validate(price_routine()).valid
    assert not executor.validate(price_routine(alert_plugin="sms")).valid
