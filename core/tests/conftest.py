"""
Shared fixtures.

Every test is isolated from the user's config file and starts with an empty
trace context. ``make_executor`` builds a ScriptedExecutor, an async plugin
capability whose per-node scripts decide each call's outcome.
"""

import asyncio
from typing import Any

import pytest

from routine_engine.observability import clear_trace_context
from routine_engine.runtime import PluginExecutionContext


class ScriptedExecutor:
    """
    NodeExecutor for tests.

    scripts maps node ids to either a value to return, an exception to
    raise, or a callable ``(config, inputs, context) -> value``. Nodes
    without a script return ``{"node": node_id, "run": run_index}``.
    """

    def __init__(
        self,
        scripts: dict[str, Any] | None = None,
        delays: dict[str, float] | None = None,
    ):
        self.scripts = scripts or {}
        self.delays = delays or {}
        self.calls: list[str] = []
        self.inputs: dict[str, list[dict]] = {}
        self.contexts: dict[str, list[PluginExecutionContext]] = {}
        self.in_flight = 0
        self.peak_in_flight = 0

    def execute_count(self, node_id: str) -> int:
        return self.calls.count(node_id)

    async def execute(self, plugin_id, config, inputs, context):
        node_id = context.node_id
        self.calls.append(node_id)
        self.inputs.setdefault(node_id, []).append(dict(inputs))
        self.contexts.setdefault(node_id, []).append(context)
        self.in_flight += 1
        self.peak_in_flight = max(self.peak_in_flight, self.in_flight)
        try:
            if node_id in self.delays:
                await asyncio.sleep(self.delays[node_id])
            script = self.scripts.get(node_id)
            if script is None:
                return {"node": node_id, "run": context.run_index}
            value = script(config, inputs, context) if callable(script) else script
            if isinstance(value, BaseException):
                raise value
            return value
        finally:
            self.in_flight -= 1


@pytest.fixture
def make_executor():
    return ScriptedExecutor


@pytest.fixture(autouse=True)
def isolated_engine_config(tmp_path, monkeypatch):
    monkeypatch.setenv("ROUTINE_ENGINE_CONFIG", str(tmp_path / "no-config.json"))


@pytest.fixture(autouse=True)
def clean_trace_context():
    clear_trace_context()
    yield
    clear_trace_context()
