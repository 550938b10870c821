"""
Command-line interface for the routine engine.

Usage:
    routine-engine validate examples/routines/branch.json --plugins examples/demo_plugins.py
    routine-engine run examples/routines/branch.json --plugins examples/demo_plugins.py
    routine-engine run routine.json --plugins my_pkg.plugins:registry --store ./.runs
    routine-engine executions --store ./.runs --routine-id price-alert
"""

import argparse
import asyncio
import importlib
import importlib.util
import json
import sys
from pathlib import Path
from typing import Any

from routine_engine.config import EngineConfig
from routine_engine.graph.edge import RoutineSpec
from routine_engine.graph.model import ExecutionGraph
from routine_engine.graph.validator import GraphValidator
from routine_engine.observability import configure_logging
from routine_engine.runtime.plugins import PluginRegistry
from routine_engine.runtime.routine_executor import RoutineExecutor
from routine_engine.storage.file_sink import FileExecutionSink
from routine_engine.storage.sink import ExecutionSink, InMemoryExecutionSink


def _load_module(target: str) -> Any:
    if target.endswith(".py"):
        path = Path(target)
        if not path.exists():
            raise FileNotFoundError(f"Plugin file not found: {target}")
        spec = importlib.util.spec_from_file_location(path.stem, path)
        if spec is None or spec.loader is None:
            raise ImportError(f"Cannot load plugin file: {target}")
        module = importlib.util.module_from_spec(spec)
        spec.loader.exec_module(module)
        return module
    return importlib.import_module(target)


def load_plugins(spec: str | None) -> PluginRegistry:
    """
    Build a registry from a plugin spec.

    Accepted forms:
        my_pkg.plugins            module with PLUGINS and/or @plugin functions
        my_pkg.plugins:registry   a PluginRegistry, a dict of plugins, or a
                                  zero-argument factory returning either
        path/to/plugins.py[:attr] same, loaded from a file
    """
    registry = PluginRegistry()
    if not spec:
        return registry

    target, _, attr = spec.partition(":")
    module = _load_module(target)
    if not attr:
        registry.register_module(module)
        return registry

    obj = getattr(module, attr)
    if callable(obj) and not isinstance(obj, PluginRegistry):
        obj = obj()
    if isinstance(obj, PluginRegistry):
        return obj
    if isinstance(obj, dict):
        for plugin_id, func in obj.items():
            registry.register(plugin_id, func)
        return registry
    raise TypeError(f"{spec} is not a PluginRegistry or a dict of plugins")


def load_routine(path: str, trigger_data: str | None = None) -> RoutineSpec:
    """
    Read a routine JSON file.

    Raises:
        OSError: the file cannot be read
        ValueError: malformed JSON, a non-object document or an invalid routine
    """
    data = json.loads(Path(path).read_text(encoding="utf-8"))
    if not isinstance(data, dict):
        raise ValueError(f"{path} must hold a JSON object, got {type(data).__name__}")
    if trigger_data is not None:
        data["triggerData"] = json.loads(trigger_data)
    return RoutineSpec.model_validate(data)


def _print_json(data: Any) -> None:
    print(json.dumps(data, indent=2, default=str))


def cmd_validate(args: argparse.Namespace) -> int:
    try:
        routine = load_routine(args.routine)
    except (OSError, ValueError) as e:
        print(f"Cannot read routine: {e}", file=sys.stderr)
        return 2

    plugin_ids = load_plugins(args.plugins).plugin_ids if args.plugins else None
    result = GraphValidator(plugin_ids).validate(ExecutionGraph.from_spec(routine))

    for issue in result.errors:
        print(f"error   [{issue.type}] {issue.message}")
    for issue in result.warnings:
        print(f"warning [{issue.type}] {issue.message}")
    if result.valid:
        print(f"✓ {routine.routine_id or args.routine} is valid")
        return 0
    print(f"✗ {len(result.errors)} error(s)")
    return 1


def cmd_run(args: argparse.Namespace) -> int:
    try:
        routine = load_routine(args.routine, args.trigger_data)
    except (OSError, ValueError) as e:
        print(f"Cannot read routine: {e}", file=sys.stderr)
        return 2

    registry = load_plugins(args.plugins)
    sink: ExecutionSink = (
        FileExecutionSink(Path(args.store)) if args.store else InMemoryExecutionSink()
    )
    executor = RoutineExecutor(registry, sink=sink, config=args.config)
    result = asyncio.run(executor.execute(routine, execution_id=args.execution_id))
    _print_json(result.summary())
    return 0 if result.success else 1


def cmd_executions(args: argparse.Namespace) -> int:
    sink = FileExecutionSink(Path(args.store))
    records = asyncio.run(sink.list_executions(args.routine_id))
    _print_json(
        [
            {
                "workflowId": r.workflow_id,
                "routineId": r.routine_id,
                "status": r.status.value,
                "createdAt": r.created_at.isoformat(),
                "nodeResults": len(r.node_results),
            }
            for r in records
        ]
    )
    return 0


def register_commands(subparsers: argparse._SubParsersAction) -> None:
    """Register validate, run and executions."""
    validate_parser = subparsers.add_parser("validate", help="Validate a routine definition")
    validate_parser.add_argument("routine", help="Path to routine JSON")
    validate_parser.add_argument(
        "--plugins", help="Plugin spec; when given, unknown plugin ids are errors"
    )
    validate_parser.set_defaults(func=cmd_validate)

    run_parser = subparsers.add_parser("run", help="Execute a routine")
    run_parser.add_argument("routine", help="Path to routine JSON")
    run_parser.add_argument(
        "--plugins", required=True, help="module[:attr] or path/to/file.py[:attr]"
    )
    run_parser.add_argument("--trigger-data", help="Trigger data as JSON (overrides the file)")
    run_parser.add_argument("--store", help="Directory for execution history (default: memory)")
    run_parser.add_argument("--execution-id", help="Execution id to use")
    run_parser.set_defaults(func=cmd_run)

    executions_parser = subparsers.add_parser("executions", help="List stored executions")
    executions_parser.add_argument("--store", required=True, help="Execution history directory")
    executions_parser.add_argument("--routine-id", help="Only this routine")
    executions_parser.set_defaults(func=cmd_executions)


def main(argv: list[str] | None = None) -> int:
    config = EngineConfig.load()

    parser = argparse.ArgumentParser(
        prog="routine-engine",
        description="Validate and run routine graphs",
    )
    parser.add_argument("--log-level", default=config.log_level, help="Log level")
    parser.add_argument(
        "--log-format",
        default=config.log_format,
        choices=["auto", "json", "human"],
        help="Log output format",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)
    register_commands(subparsers)

    args = parser.parse_args(argv)
    args.config = config
    configure_logging(level=args.log_level, format=args.log_format)
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
