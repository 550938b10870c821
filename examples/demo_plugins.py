"""
Demo plugins for the example routines.

Load with:
    routine-engine run examples/routines/branch.json --plugins examples/demo_plugins.py
"""

import logging
from typing import Any

from routine_engine import PluginExecutionContext, plugin

logger = logging.getLogger(__name__)


def _compare(value: Any, operator: str, compare_value: Any) -> bool:
    if operator == "==":
        return value == compare_value
    if operator == "!=":
        return value != compare_value
    if operator in (">", "<", ">=", "<="):
        left, right = float(value), float(compare_value)
        return {
            ">": left > right,
            "<": left < right,
            ">=": left >= right,
            "<=": left <= right,
        }[operator]
    if operator == "contains":
        return isinstance(value, str | list) and compare_value in value
    if operator == "exists":
        return value is not None
    if operator == "empty":
        return value is None or (isinstance(value, str | list | dict) and len(value) == 0)
    raise ValueError(f"Unsupported operator: {operator}")


@plugin("static-data", description="Emit the configured data")
def static_data(config: dict, inputs: dict, context: PluginExecutionContext) -> dict:
    return dict(config.get("data", {}))


@plugin("if-else", description="Branch on conditions; emits the true or false handle")
def if_else(config: dict, inputs: dict, context: PluginExecutionContext) -> dict:
    value = inputs.get("data", inputs.get("value"))
    conditions = config.get("conditions", [])
    checks = [_compare(value, c["operator"], c.get("compareValue")) for c in conditions]
    if config.get("logicalOperator", "AND") == "OR":
        outcome = any(checks)
    else:
        outcome = all(checks)
    branch = "true" if outcome else "false"
    return {branch: {"result": outcome, "evaluatedValue": value}}


@plugin("counter", description="Count how many times this node ran in the run")
def counter(config: dict, inputs: dict, context: PluginExecutionContext) -> dict:
    count = context.node_state.get("count", 0) + 1
    context.node_state["count"] = count
    context.heartbeat(count)
    return {"count": count, "iteration": context.loop_iteration}


@plugin("collect", description="Append the input item to a list kept across loop passes")
def collect(config: dict, inputs: dict, context: PluginExecutionContext) -> dict:
    items = list((context.loop_accumulator or {}).get("items", []))
    items.append(inputs.get(config.get("field", "count")))
    return {"items": items}


@plugin("log", description="Log the inputs and pass them through")
async def log_inputs(config: dict, inputs: dict, context: PluginExecutionContext) -> dict:
    logger.info(f"{config.get('message', 'inputs')}: {inputs}")
    return dict(inputs)
