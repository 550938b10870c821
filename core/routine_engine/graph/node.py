"""Node Protocol - A plugin invocation inside a routine graph."""

from typing import Any

from pydantic import BaseModel, Field
from pydantic.alias_generators import to_camel


class RoutineNode(BaseModel):
    """
    Specification for a node in a routine.

    The config is already resolved (no placeholders left) by the time the
    engine sees it, and stays untouched for the whole run.

    Example:
        RoutineNode(
            id="check-price",
            plugin_id="if-else",
            config={"conditions": [{"operator": "greaterThan", "value": 100}]},
        )
    """

    id: str
    plugin_id: str = Field(description="Identifier of the plugin to invoke")
    config: dict[str, Any] = Field(default_factory=dict)
    enabled: bool = Field(default=True, description="Disabled nodes pass their inputs through")
    label: str = ""

    # Editor-only fields (position, credential mappings) are kept on round-trip
    model_config = {
        "alias_generator": to_camel,
        "populate_by_name": True,
        "extra": "allow",
    }

    @property
    def display_name(self) -> str:
        return self.label or self.id
