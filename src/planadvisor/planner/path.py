"""
NodePath: location of a node in a plan tree.

Join nodes have exactly two children, so segments name the side taken
rather than a positional index: ``Plan → outer → inner`` is the inner
child of the root's outer child. Findings carry a NodePath so renderers
can point at the node they talk about.
"""

from __future__ import annotations

from typing import Any

from pydantic import GetCoreSchemaHandler, GetJsonSchemaHandler
from pydantic.json_schema import JsonSchemaValue
from pydantic_core import CoreSchema, core_schema

ROOT = "Plan"
SIDES = ("outer", "inner")


class NodePath:
    """
    Immutable path from the plan root to a node.

    Example:
        path = NodePath.root()          # ("Plan",)
        probe = path.child(1)           # ("Plan", "inner")
        str(probe.child(0))             # "Plan → inner → outer"
    """

    __slots__ = ("_segments",)

    def __init__(self, segments: tuple[str, ...] | None = None) -> None:
        self._segments: tuple[str, ...] = segments or (ROOT,)

    @classmethod
    def root(cls) -> "NodePath":
        return cls((ROOT,))

    @property
    def segments(self) -> tuple[str, ...]:
        return self._segments

    def child(self, index: int) -> "NodePath":
        """Path to the outer (0) or inner (1) child."""
        if index not in (0, 1):
            raise ValueError(f"plan nodes have at most two children, got index {index}")
        return NodePath(self._segments + (SIDES[index],))

    def __str__(self) -> str:
        return " → ".join(self._segments)

    def __repr__(self) -> str:
        return f"NodePath({'.'.join(self._segments)})"

    def __eq__(self, other: object) -> bool:
        if isinstance(other, NodePath):
            return self._segments == other._segments
        return False

    def __hash__(self) -> int:
        return hash(self._segments)

    # Pydantic v2 serialization support
    @classmethod
    def __get_pydantic_core_schema__(
        cls, source_type: Any, handler: GetCoreSchemaHandler
    ) -> CoreSchema:
        return core_schema.no_info_after_validator_function(
            cls._validate,
            core_schema.union_schema([
                core_schema.is_instance_schema(cls),
                core_schema.list_schema(core_schema.str_schema()),
            ]),
            serialization=core_schema.plain_serializer_function_ser_schema(
                lambda x: list(x.segments),
                info_arg=False,
            ),
        )

    @classmethod
    def _validate(cls, value: Any) -> "NodePath":
        if isinstance(value, cls):
            return value
        if isinstance(value, (list, tuple)):
            return cls(tuple(value))
        raise ValueError(f"Cannot convert {type(value)} to NodePath")

    @classmethod
    def __get_pydantic_json_schema__(
        cls, core_schema: CoreSchema, handler: GetJsonSchemaHandler
    ) -> JsonSchemaValue:
        return {
            "type": "array",
            "items": {"type": "string"},
            "description": "Path from the plan root: 'Plan' then 'outer'/'inner' per level",
            "example": ["Plan", "outer", "inner"],
        }
