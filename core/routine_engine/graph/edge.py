"""
Edge Protocol - How nodes connect in a routine.

Connections come in two kinds:
- flow: decides WHICH node runs next. The edge carries the signal name
  (source_handle) it reacts to, e.g. "default", "true", "false", "loop".
  A flow edge with a loop_config is a loop edge and may point backwards.
- data: decides WHAT data a node receives. Data edges never influence
  execution order; they read the latest output of an already executed node.

Routing is owned by the nodes: an if-else node emits "true" or "false" and
only the edges listening for that signal are traversed.
"""

from enum import StrEnum
from typing import Annotated, Any, Literal

from pydantic import BaseModel, Field, field_validator
from pydantic.alias_generators import to_camel

from routine_engine.graph.node import RoutineNode

DEFAULT_SIGNAL = "default"
LOOP_HANDLE = "loop"

MIN_LOOP_ITERATIONS = 1
MAX_LOOP_ITERATIONS = 1000


class ConnectionType(StrEnum):
    """Kind of connection between two nodes."""

    FLOW = "flow"
    DATA = "data"


class RoutineModel(BaseModel):
    model_config = {
        "alias_generator": to_camel,
        "populate_by_name": True,
        "extra": "allow",
    }


class LoopConfig(RoutineModel):
    """
    Bounds for a loop edge.

    Bounds are checked by the graph validator rather than here so that every
    misconfigured loop shows up in one validation report.
    """

    max_iterations: int = Field(description="Maximum number of passes through the loop target")
    accumulator_fields: list[str] = Field(
        default_factory=list,
        description="Output fields merged into the loop accumulator after each pass",
    )


class FlowConnection(RoutineModel):
    """
    Control-flow edge.

    Examples:
        # Plain sequencing
        FlowConnection(id="a-b", source_node_id="a", target_node_id="b")

        # Conditional branch
        FlowConnection(id="if-yes", source_node_id="if", target_node_id="notify",
                       source_handle="true")

        # Bounded loop back into "fetch"
        FlowConnection(
            id="retry-fetch",
            source_node_id="check",
            target_node_id="fetch",
            source_handle="loop",
            loop_config=LoopConfig(max_iterations=5, accumulator_fields=["items"]),
        )
    """

    type: Literal["flow"] = "flow"
    id: str
    source_node_id: str
    target_node_id: str
    source_handle: str = Field(
        default=DEFAULT_SIGNAL, description="Signal emitted by the source that activates this edge"
    )
    target_handle: str | None = None
    loop_config: LoopConfig | None = None

    @property
    def is_loop(self) -> bool:
        """True when this edge goes through the loop controller."""
        return self.loop_config is not None

    def matches(self, signal: str) -> bool:
        return self.source_handle == signal


class DataConnection(RoutineModel):
    """
    Data edge: maps an output port of the source onto an input of the target.

    Example:
        DataConnection(
            id="price-to-if",
            source_node_id="price",
            target_node_id="if",
            source_handle="price",
            target_handle="value",
        )
    """

    type: Literal["data"] = "data"
    id: str
    source_node_id: str
    target_node_id: str
    source_handle: str | None = None
    target_handle: str | None = None


Connection = Annotated[FlowConnection | DataConnection, Field(discriminator="type")]


class RoutineSpec(RoutineModel):
    """
    Complete definition of a routine as produced by the editor.

    Example:
        RoutineSpec(
            routine_id="r1",
            user_id="u1",
            nodes=[RoutineNode(id="a", plugin_id="static-data"), ...],
            connections=[FlowConnection(id="a-b", source_node_id="a", target_node_id="b")],
            trigger_data={"triggerType": "manual"},
        )
    """

    routine_id: str = ""
    user_id: str = ""
    nodes: list[RoutineNode] = Field(default_factory=list)
    connections: list[Connection] = Field(default_factory=list)
    trigger_data: Any = None

    @field_validator("connections", mode="before")
    @classmethod
    def _default_connection_type(cls, value: Any) -> Any:
        # Older payloads carry no "type"; those are flow connections
        if not isinstance(value, list):
            return value
        normalized = []
        for item in value:
            if isinstance(item, dict) and "type" not in item:
                item = {**item, "type": ConnectionType.FLOW.value}
            normalized.append(item)
        return normalized
