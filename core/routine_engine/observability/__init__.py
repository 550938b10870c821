"""
Observability for routine runs.

- Trace context (execution, routine, node ids) propagated via ContextVar
- JSON logging for production, colorized logging for development
"""

from routine_engine.observability.logging import (
    clear_trace_context,
    configure_logging,
    get_trace_context,
    set_trace_context,
    trace_scope,
)

__all__ = [
    "configure_logging",
    "get_trace_context",
    "set_trace_context",
    "clear_trace_context",
    "trace_scope",
]
