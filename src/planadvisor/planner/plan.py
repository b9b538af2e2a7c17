"""
Plan nodes.

A closed set of immutable node variants, each tagged with a PlanKind.
Code that needs per-kind behavior dispatches on ``node.kind`` through a
table rather than testing classes, so adding a kind means adding a table
entry everywhere it matters.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, ClassVar, Iterator

from planadvisor.planner.path import NodePath
from planadvisor.planner.classifier import Sargable
from planadvisor.query.spec import JoinEdge, JoinKind
from planadvisor.stats.models import Index


class PlanKind(str, Enum):
    SEQ_SCAN = "seq_scan"
    INDEX_SCAN = "index_scan"
    INDEX_ONLY_SCAN = "index_only_scan"
    BITMAP_SCAN = "bitmap_scan"
    NESTED_LOOP = "nested_loop"
    HASH_JOIN = "hash_join"
    MERGE_JOIN = "merge_join"

    @property
    def is_scan(self) -> bool:
        return self in SCAN_KINDS

    @property
    def is_join(self) -> bool:
        return not self.is_scan

    @property
    def label(self) -> str:
        return _LABELS[self]

    @property
    def rank(self) -> int:
        """Tie-break order among equal-cost candidates (lower wins)."""
        return _RANKS[self]


SCAN_KINDS = frozenset(
    {PlanKind.SEQ_SCAN, PlanKind.INDEX_SCAN, PlanKind.INDEX_ONLY_SCAN, PlanKind.BITMAP_SCAN}
)

_LABELS = {
    PlanKind.SEQ_SCAN: "Seq Scan",
    PlanKind.INDEX_SCAN: "Index Scan",
    PlanKind.INDEX_ONLY_SCAN: "Index Only Scan",
    PlanKind.BITMAP_SCAN: "Bitmap Heap Scan",
    PlanKind.NESTED_LOOP: "Nested Loop",
    PlanKind.HASH_JOIN: "Hash Join",
    PlanKind.MERGE_JOIN: "Merge Join",
}

_RANKS = {
    PlanKind.INDEX_ONLY_SCAN: 0,
    PlanKind.INDEX_SCAN: 1,
    PlanKind.BITMAP_SCAN: 2,
    PlanKind.SEQ_SCAN: 3,
    PlanKind.NESTED_LOOP: 0,
    PlanKind.HASH_JOIN: 1,
    PlanKind.MERGE_JOIN: 2,
}


@dataclass(frozen=True, kw_only=True)
class PlanNode:
    """
    Common fields of every plan node.

    Attributes:
        cost: Total estimated cost of this subtree.
        rows: Estimated output rows.
        width: Estimated output row width in bytes.
        relations: Relation keys this subtree covers.
        ordering: Qualified columns ("rel.col") the output is sorted by.
        fixed: Qualified columns pinned to one value (equality-bound), which
            makes them irrelevant to ordering checks.
    """

    kind: ClassVar[PlanKind]

    cost: float
    rows: float
    width: int
    relations: frozenset[str]
    ordering: tuple[str, ...] = ()
    fixed: frozenset[str] = frozenset()

    @property
    def children(self) -> tuple["PlanNode", ...]:
        return ()

    def walk(self, path: NodePath | None = None) -> Iterator[tuple[NodePath, "PlanNode"]]:
        """Pre-order traversal yielding (path, node)."""
        path = path or NodePath.root()
        yield path, self
        for i, child in enumerate(self.children):
            yield from child.walk(path.child(i))

    def sort_key(self) -> tuple[float, float, int]:
        return (round(self.cost, 6), self.rows, self.kind.rank)

    def delivers_order(self, wanted: tuple[str, ...]) -> bool:
        """
        True when the output is already sorted by ``wanted`` (one direction).

        Columns pinned by equality can be skipped on either side.
        """
        if not wanted:
            return True
        remaining = [c for c in wanted if c not in self.fixed]
        available = [c for c in self.ordering if c not in self.fixed]
        if not remaining:
            return True
        return available[: len(remaining)] == remaining


# ── Scans ────────────────────────────────────────────────────────────────


@dataclass(frozen=True, kw_only=True)
class ScanNode(PlanNode):
    relation: str
    table: str
    filter: tuple[Any, ...] = ()


@dataclass(frozen=True, kw_only=True)
class SeqScan(ScanNode):
    kind: ClassVar[PlanKind] = PlanKind.SEQ_SCAN


@dataclass(frozen=True, kw_only=True)
class IndexScan(ScanNode):
    """
    Seek on ``index`` (``classification`` None means a full scan in key
    order). ``parameterized`` marks the inner side of a nested loop, where
    cost and rows are per probe.
    """

    kind: ClassVar[PlanKind] = PlanKind.INDEX_SCAN

    index: Index
    classification: Sargable | None = None
    parameterized: bool = False

    @property
    def index_condition(self) -> tuple[Any, ...]:
        return self.classification.bound if self.classification else ()


@dataclass(frozen=True, kw_only=True)
class IndexOnlyScan(IndexScan):
    kind: ClassVar[PlanKind] = PlanKind.INDEX_ONLY_SCAN


@dataclass(frozen=True, kw_only=True)
class BitmapScan(ScanNode):
    """Bitmap heap scan over one index, or a BitmapOr of several."""

    kind: ClassVar[PlanKind] = PlanKind.BITMAP_SCAN

    inputs: tuple[Sargable, ...]

    @property
    def indexes(self) -> tuple[Index, ...]:
        return tuple(c.index for c in self.inputs)


# ── Joins ────────────────────────────────────────────────────────────────


@dataclass(frozen=True, kw_only=True)
class JoinNode(PlanNode):
    outer: PlanNode
    inner: PlanNode
    join_kind: JoinKind = JoinKind.INNER
    edges: tuple[JoinEdge, ...] = ()
    selectivity: float = 1.0
    low_confidence: bool = False

    @property
    def children(self) -> tuple[PlanNode, ...]:
        return (self.outer, self.inner)

    @property
    def condition_sql(self) -> str:
        parts = [e.condition.to_sql() for e in self.edges if e.condition is not None]
        return " AND ".join(parts)


@dataclass(frozen=True, kw_only=True)
class NestedLoop(JoinNode):
    kind: ClassVar[PlanKind] = PlanKind.NESTED_LOOP

    inner_index: Index | None = None


@dataclass(frozen=True, kw_only=True)
class HashJoin(JoinNode):
    kind: ClassVar[PlanKind] = PlanKind.HASH_JOIN

    spill_bytes: int = 0


@dataclass(frozen=True, kw_only=True)
class MergeJoin(JoinNode):
    kind: ClassVar[PlanKind] = PlanKind.MERGE_JOIN

    sort_cost: float = 0.0


JOIN_NODE_TYPES: dict[str, type[JoinNode]] = {
    PlanKind.NESTED_LOOP.value: NestedLoop,
    PlanKind.HASH_JOIN.value: HashJoin,
    PlanKind.MERGE_JOIN.value: MergeJoin,
}


# ── Rendering ────────────────────────────────────────────────────────────


def _scan_detail(node: Any) -> list[str]:
    lines = []
    if node.filter:
        lines.append("Filter: " + " AND ".join(p.to_sql() for p in node.filter))
    return lines


def _index_detail(node: Any) -> list[str]:
    lines = []
    if node.index_condition:
        lines.append("Index Cond: " + " AND ".join(p.to_sql() for p in node.index_condition))
    elif node.classification is None:
        lines.append("Full index scan in key order")
    return lines + _scan_detail(node)


def _bitmap_detail(node: Any) -> list[str]:
    lines = []
    if len(node.inputs) > 1:
        lines.append("BitmapOr: " + ", ".join(c.index.name for c in node.inputs))
    for c in node.inputs:
        lines.append(
            f"Bitmap Index Scan on {c.index.name}: "
            + " AND ".join(p.to_sql() for p in c.bound)
        )
    return lines + _scan_detail(node)


def _join_detail(node: Any) -> list[str]:
    lines = []
    if node.join_kind is not JoinKind.INNER:
        lines.append(f"Join Type: {node.join_kind.value}")
    if node.condition_sql:
        lines.append(f"Cond: {node.condition_sql}")
    if node.low_confidence:
        lines.append("Low confidence: no feasible join strategy, fallback used")
    return lines


def _nested_loop_detail(node: Any) -> list[str]:
    lines = _join_detail(node)
    if node.inner_index is not None:
        lines.append(f"Inner probe via {node.inner_index.name}")
    return lines


def _hash_detail(node: Any) -> list[str]:
    lines = _join_detail(node)
    if node.spill_bytes:
        lines.append(f"Build side spills ~{node.spill_bytes:,} bytes")
    return lines


def _merge_detail(node: Any) -> list[str]:
    lines = _join_detail(node)
    if node.sort_cost:
        lines.append(f"Sort cost {node.sort_cost:,.2f}")
    return lines


def _scan_header(node: Any) -> str:
    return f"{node.kind.label} on {node.table}" + (
        f" {node.relation}" if node.relation != node.table else ""
    )


def _index_header(node: Any) -> str:
    prefix = "Parameterized " if node.parameterized else ""
    return f"{prefix}{node.kind.label} using {node.index.name} on {node.table}" + (
        f" {node.relation}" if node.relation != node.table else ""
    )


_HEADERS: dict[PlanKind, Callable[[Any], str]] = {
    PlanKind.SEQ_SCAN: _scan_header,
    PlanKind.INDEX_SCAN: _index_header,
    PlanKind.INDEX_ONLY_SCAN: _index_header,
    PlanKind.BITMAP_SCAN: _scan_header,
    PlanKind.NESTED_LOOP: lambda n: n.kind.label,
    PlanKind.HASH_JOIN: lambda n: n.kind.label,
    PlanKind.MERGE_JOIN: lambda n: n.kind.label,
}

_DETAILS: dict[PlanKind, Callable[[Any], list[str]]] = {
    PlanKind.SEQ_SCAN: _scan_detail,
    PlanKind.INDEX_SCAN: _index_detail,
    PlanKind.INDEX_ONLY_SCAN: _index_detail,
    PlanKind.BITMAP_SCAN: _bitmap_detail,
    PlanKind.NESTED_LOOP: _nested_loop_detail,
    PlanKind.HASH_JOIN: _hash_detail,
    PlanKind.MERGE_JOIN: _merge_detail,
}


def describe(node: PlanNode) -> str:
    """One-line summary, e.g. ``Index Scan using ix_status on orders``."""
    return _HEADERS[node.kind](node)


def explain(node: PlanNode, indent: int = 0) -> str:
    """Indented EXPLAIN-style text for a plan tree."""
    pad = "  " * indent
    arrow = "-> " if indent else ""
    lines = [
        f"{pad}{arrow}{describe(node)}  (cost={node.cost:,.2f} rows={node.rows:,.0f} width={node.width})"
    ]
    detail_pad = pad + ("   " if indent else "  ")
    lines.extend(f"{detail_pad}{d}" for d in _DETAILS[node.kind](node))
    for child in node.children:
        lines.append(explain(child, indent + 1))
    return "\n".join(lines)


def scans(node: PlanNode) -> list[ScanNode]:
    """Scan leaves of a plan, left to right."""
    return [n for _, n in node.walk() if n.kind.is_scan]


def find_scan(node: PlanNode, relation: str) -> ScanNode | None:
    for leaf in scans(node):
        if leaf.relation == relation:
            return leaf
    return None


def node_count(node: PlanNode) -> int:
    return sum(1 for _ in node.walk())


__all__ = [
    "BitmapScan",
    "HashJoin",
    "IndexOnlyScan",
    "IndexScan",
    "JOIN_NODE_TYPES",
    "JoinNode",
    "MergeJoin",
    "NestedLoop",
    "PlanKind",
    "PlanNode",
    "ScanNode",
    "SeqScan",
    "describe",
    "explain",
]
