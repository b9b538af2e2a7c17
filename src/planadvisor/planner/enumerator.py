"""
Plan enumeration and choice.

Builds access paths per relation, then joins relations greedily along the
join edges in the order given, keeping the cheapest candidate at every
step. This is not the exhaustive dynamic-programming search PostgreSQL
runs: the edge order decides the join tree shape, and the advisor compares
orders separately (see the join-order rule).

Work is bounded by ``max_join_enumeration_steps`` (candidate joins costed)
plus an optional deadline and cancel event. Once any bound trips, the
remaining edges are joined with their first feasible strategy and the
result is marked truncated.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Mapping, Sequence

from planadvisor.config import CostSettings
from planadvisor.exceptions import NoFeasibleJoinStrategyError
from planadvisor.planner.classifier import (
    PredicateClassifier,
    Sargable,
    parameter,
)
from planadvisor.planner.cost import CostEstimator
from planadvisor.planner.plan import (
    JOIN_NODE_TYPES,
    BitmapScan,
    IndexOnlyScan,
    IndexScan,
    JoinNode,
    NestedLoop,
    PlanNode,
    ScanNode,
    SeqScan,
    find_scan,
)
from planadvisor.planner.selectivity import (
    DEFAULT_EQ_SEL,
    DEFAULT_INEQ_SEL,
    SelectivityEstimator,
    clamp_probability,
    equijoin_selectivity,
)
from planadvisor.query.predicates import ColumnRef, Comparison, Disjunction, Operator
from planadvisor.query.spec import JoinEdge, JoinKind, QuerySpec
from planadvisor.stats.models import Table
from planadvisor.stats.store import StatisticsSnapshot

logger = logging.getLogger(__name__)

# Strategy order when enumeration is truncated: first feasible wins
STRATEGY_ORDER = ("nested_loop", "hash_join", "merge_join")


@dataclass(frozen=True)
class JoinFailure:
    """A join step no enabled strategy could implement."""

    left: frozenset[str]
    right: frozenset[str]
    reason: str
    cartesian: bool = False

    @property
    def left_label(self) -> str:
        return ", ".join(sorted(self.left))

    @property
    def right_label(self) -> str:
        return ", ".join(sorted(self.right))

    def error(self) -> NoFeasibleJoinStrategyError:
        return NoFeasibleJoinStrategyError(self.left_label, self.right_label, self.reason)


@dataclass(frozen=True)
class EnumerationResult:
    """
    The chosen plan plus what it took to choose it.

    Attributes:
        root: Chosen plan, covering every relation.
        scan_candidates: Access paths per relation key, cheapest first.
        join_candidates: Candidates per join step, cheapest first (only
            filled in explain mode).
        steps: Candidate joins costed.
        truncated: True when a work bound stopped the search early.
        truncation_reason: Which bound tripped.
        failures: Join steps with no feasible strategy.
        sort_cost: Explicit sort added for ORDER BY (0 when the plan
            already delivers the order).
        limit_fraction: Share of the plan's cost charged under LIMIT.
        edge_order: Join edges in the order they were applied.
    """

    root: PlanNode
    scan_candidates: Mapping[str, tuple[ScanNode, ...]]
    join_candidates: tuple[tuple[PlanNode, ...], ...] = ()
    steps: int = 0
    truncated: bool = False
    truncation_reason: str | None = None
    failures: tuple[JoinFailure, ...] = ()
    sort_cost: float = 0.0
    limit_fraction: float = 1.0
    edge_order: tuple[JoinEdge, ...] = field(default=(), compare=False)

    @property
    def total_cost(self) -> float:
        return self.root.cost * self.limit_fraction + self.sort_cost

    @property
    def low_confidence(self) -> bool:
        return bool(self.failures) or self.truncated

    def chosen_scan(self, relation: str) -> ScanNode | None:
        return find_scan(self.root, relation)


@dataclass
class _Budget:
    max_steps: int
    deadline: float | None
    cancel: threading.Event | None
    steps: int = 0
    reason: str | None = None

    def exhausted(self) -> bool:
        if self.reason is not None:
            return True
        if self.steps >= self.max_steps:
            self.reason = f"max_join_enumeration_steps ({self.max_steps}) reached"
        elif self.deadline is not None and time.monotonic() >= self.deadline:
            self.reason = "deadline exceeded"
        elif self.cancel is not None and self.cancel.is_set():
            self.reason = "cancelled"
        return self.reason is not None


class PlanEnumerator:
    """
    Chooses a plan for a query against one statistics snapshot.

    Example:
        enumerator = PlanEnumerator(store.snapshot(), config.cost)
        result = enumerator.enumerate(query)
        print(explain(result.root))
    """

    def __init__(
        self,
        snapshot: StatisticsSnapshot,
        settings: CostSettings | None = None,
        *,
        estimator: CostEstimator | None = None,
        strict: bool = False,
    ) -> None:
        self.snapshot = snapshot
        self.settings = settings or CostSettings()
        self.estimator = estimator or CostEstimator(self.settings)
        self.strict = strict

    # ── Access paths ─────────────────────────────────────────────────────

    def table_for(self, query: QuerySpec, key: str) -> Table:
        return self.snapshot.get_table(query.relation(key).table)

    def output_width(self, query: QuerySpec, key: str) -> int:
        table = self.table_for(query, key)
        needed = query.columns_for(key)
        if needed is None:
            return table.row_width
        return max(1, sum(table.column(c).avg_width for c in needed))

    def access_paths(self, query: QuerySpec, key: str) -> list[ScanNode]:
        """Every enabled access path for relation ``key``, cheapest first."""
        s = self.settings
        table = self.table_for(query, key)
        predicates = query.local_predicates(key)
        needed = query.columns_for(key)
        width = self.output_width(query, key)
        classifier = PredicateClassifier(table, key)
        base = dict(relation=key, table=table.name, width=width, relations=frozenset((key,)))

        seq = self.estimator.seq_scan(table, predicates)
        candidates: list[ScanNode] = [
            SeqScan(cost=seq.cost, rows=seq.rows, filter=tuple(predicates), **base)
        ]
        wanted = order_columns(query, key)

        for index in table.indexes:
            result = classifier.classify(predicates, index)
            covering = needed is not None and index.covers(needed)
            ordering = tuple(f"{key}.{c}" for c in index.columns)
            if isinstance(result, Sargable):
                fixed = frozenset(f"{key}.{c}" for c in result.equality_columns)
                if s.scan_enabled("index_scan"):
                    est = self.estimator.index_scan(table, result, predicates)
                    candidates.append(IndexScan(
                        cost=est.cost, rows=est.rows, index=index, classification=result,
                        filter=result.residual, ordering=ordering, fixed=fixed, **base,
                    ))
                if covering and s.scan_enabled("index_only_scan"):
                    est = self.estimator.index_scan(table, result, predicates, index_only=True)
                    candidates.append(IndexOnlyScan(
                        cost=est.cost, rows=est.rows, index=index, classification=result,
                        filter=result.residual, ordering=ordering, fixed=fixed, **base,
                    ))
                if s.scan_enabled("bitmap_scan"):
                    est = self.estimator.bitmap_scan(table, [result], predicates)
                    candidates.append(BitmapScan(
                        cost=est.cost, rows=est.rows, inputs=(result,),
                        filter=result.residual, **base,
                    ))
            elif (
                wanted
                and index.predicate is None
                and ordering[: len(wanted)] == wanted
                and s.scan_enabled("index_scan")
            ):
                # no seek, but reading the index in key order avoids a sort
                est = self.estimator.full_index_scan(table, index, predicates)
                candidates.append(IndexScan(
                    cost=est.cost, rows=est.rows, index=index, classification=None,
                    filter=tuple(predicates), ordering=ordering, **base,
                ))
                if covering and s.scan_enabled("index_only_scan"):
                    est = self.estimator.full_index_scan(table, index, predicates, index_only=True)
                    candidates.append(IndexOnlyScan(
                        cost=est.cost, rows=est.rows, index=index, classification=None,
                        filter=tuple(predicates), ordering=ordering, **base,
                    ))

        if s.scan_enabled("bitmap_scan"):
            for predicate in predicates:
                if not isinstance(predicate, Disjunction):
                    continue
                inputs = classifier.bitmap_union_candidates(predicate)
                if inputs is None:
                    continue
                rest = tuple(p for p in predicates if p is not predicate)
                est = self.estimator.bitmap_scan(table, inputs, predicates)
                candidates.append(BitmapScan(
                    cost=est.cost, rows=est.rows, inputs=inputs, filter=rest, **base,
                ))

        candidates.sort(key=lambda n: n.sort_key())
        logger.debug(
            "%s: %d access paths, cheapest %s (%.2f)",
            key,
            len(candidates),
            candidates[0].kind.value,
            candidates[0].cost,
        )
        return candidates

    def probe(self, query: QuerySpec, key: str, keys: Sequence[tuple[ColumnRef, ColumnRef]]) -> IndexScan | None:
        """
        Cheapest parameterized index scan on relation ``key`` whose seek
        uses at least one join key (values supplied per outer row).
        """
        if not keys or not self.settings.scan_enabled("index_scan"):
            return None
        table = self.table_for(query, key)
        predicates = query.local_predicates(key)
        needed = query.columns_for(key)
        params = [
            parameter(ColumnRef(relation=key, column=inner.column), str(outer))
            for outer, inner in keys
        ]
        classifier = PredicateClassifier(table, key)
        width = self.output_width(query, key)
        best: IndexScan | None = None
        for index in table.indexes:
            result = classifier.classify(predicates, index, parameters=params)
            if not isinstance(result, Sargable):
                continue
            if not any(b is p for b in result.bound for p in params):
                continue
            node_type = IndexScan
            index_only = False
            if needed is not None and index.covers(needed) and self.settings.scan_enabled("index_only_scan"):
                node_type = IndexOnlyScan
                index_only = True
            est = self.estimator.index_scan(table, result, predicates, index_only=index_only)
            node = node_type(
                cost=est.cost,
                rows=est.rows,
                width=width,
                relations=frozenset((key,)),
                relation=key,
                table=table.name,
                index=index,
                classification=result,
                filter=result.residual,
                parameterized=True,
            )
            if best is None or node.sort_key() < best.sort_key():
                best = node
        return best

    # ── Joins ────────────────────────────────────────────────────────────

    def edge_selectivity(self, query: QuerySpec, edge: JoinEdge) -> float:
        """Fraction of the cross product an edge's condition keeps."""
        sel = 1.0
        for left, right in edge.equi_keys:
            sel *= equijoin_selectivity(
                self.table_for(query, query.relation_of(left)),
                left.column,
                self.table_for(query, query.relation_of(right)),
                right.column,
            )
        for item in edge.other_conditions:
            rels = {query.relation_of(c) for c in item.columns()}
            if len(rels) == 1:
                sel *= SelectivityEstimator(self.table_for(query, rels.pop())).selectivity(item)
            elif isinstance(item, Comparison) and item.operator is Operator.EQ:
                sel *= DEFAULT_EQ_SEL
            else:
                sel *= DEFAULT_INEQ_SEL
        return clamp_probability(sel)

    def _join_keys(
        self, query: QuerySpec, edges: Sequence[JoinEdge], outer: frozenset[str]
    ) -> list[tuple[ColumnRef, ColumnRef]]:
        keys = []
        for edge in edges:
            for a, b in edge.equi_keys:
                if query.relation_of(a) in outer:
                    keys.append((a, b))
                else:
                    keys.append((b, a))
        return keys

    def _orientations(
        self, kind: JoinKind, left: frozenset[str], right: frozenset[str]
    ) -> list[tuple[frozenset[str], frozenset[str]]]:
        if kind.is_symmetric:
            return [(left, right), (right, left)]
        return [(left, right)]

    def _build(
        self,
        strategy: str,
        outer: PlanNode,
        inner: PlanNode,
        kind: JoinKind,
        edges: Sequence[JoinEdge],
        selectivity: float,
        keys: Sequence[tuple[ColumnRef, ColumnRef]],
        probe: IndexScan | None = None,
        low_confidence: bool = False,
    ) -> JoinNode:
        outer_order = tuple(str(a) for a, _ in keys)
        inner_order = tuple(str(b) for _, b in keys)
        inner_node = probe if probe is not None else inner
        est = self.estimator.estimate_join(
            outer.cost,
            outer.rows,
            inner.cost,
            inner.rows,
            kind,
            strategy,
            selectivity=selectivity,
            inner_probe_cost=probe.cost if probe is not None else None,
            left_width=outer.width,
            right_width=inner.width,
            left_ordered=bool(keys) and outer.delivers_order(outer_order),
            right_ordered=bool(keys) and inner.delivers_order(inner_order),
        )
        width = outer.width if kind in (JoinKind.SEMI, JoinKind.ANTI) else outer.width + inner.width
        common = dict(
            cost=est.cost,
            rows=est.rows,
            width=width,
            relations=outer.relations | inner.relations,
            outer=outer,
            inner=inner_node,
            join_kind=kind,
            edges=tuple(edges),
            selectivity=selectivity,
            low_confidence=low_confidence,
        )
        node_type = JOIN_NODE_TYPES[strategy]
        if strategy == "nested_loop":
            return NestedLoop(
                inner_index=probe.index if probe is not None else None,
                ordering=outer.ordering,
                fixed=outer.fixed,
                **common,
            )
        if strategy == "hash_join":
            return node_type(spill_bytes=est.spill_bytes, **common)
        # merge join output is ordered by the outer keys
        return node_type(sort_cost=est.sort_cost, ordering=outer_order, **common)

    def _infeasible_reason(self, kind: JoinKind, keys: Sequence[Any]) -> str | None:
        s = self.settings
        feasible = [st for st in STRATEGY_ORDER if s.join_enabled(st) and self._feasible(st, kind, keys)]
        if feasible:
            return None
        if not keys and kind is JoinKind.FULL:
            return "FULL JOIN needs an equality condition for a hash or merge join"
        if not keys:
            return "no equality condition and nested loop is disabled"
        return "every applicable join strategy is disabled"

    @staticmethod
    def _feasible(strategy: str, kind: JoinKind, keys: Sequence[Any]) -> bool:
        if strategy == "nested_loop":
            return kind is not JoinKind.FULL
        return bool(keys)

    def _ordered_alternative(
        self, best: PlanNode, alternatives: Sequence[PlanNode], wanted: tuple[str, ...]
    ) -> list[PlanNode]:
        """The best plan plus the cheapest alternative already sorted by ``wanted``."""
        picks = [best]
        for alt in alternatives:
            if alt is not best and alt.delivers_order(wanted):
                picks.append(alt)
                break
        return picks

    def join_step(
        self,
        query: QuerySpec,
        left: frozenset[str],
        right: frozenset[str],
        edges: Sequence[JoinEdge],
        best: Mapping[frozenset[str], PlanNode],
        alternatives: Mapping[frozenset[str], Sequence[PlanNode]],
        budget: _Budget,
        *,
        first_only: bool = False,
    ) -> tuple[list[JoinNode], JoinFailure | None]:
        """
        Candidate joins of two components, cheapest first, or a
        low-confidence fallback plus the failure when nothing is feasible.
        """
        kind = edges[0].kind if edges else JoinKind.INNER
        selectivity = 1.0
        for edge in edges:
            selectivity *= self.edge_selectivity(query, edge)

        candidates: list[JoinNode] = []
        # no join condition: a cartesian product is always reported, never costed as a plain join
        orientations = self._orientations(kind, left, right) if edges else ()
        for outer_set, inner_set in orientations:
            keys = self._join_keys(query, edges, outer_set)
            outer, inner = best[outer_set], best[inner_set]
            for strategy in STRATEGY_ORDER:
                if not self.settings.join_enabled(strategy) or not self._feasible(strategy, kind, keys):
                    continue
                if strategy == "nested_loop":
                    probe = None
                    if len(inner_set) == 1:
                        probe = self.probe(query, next(iter(inner_set)), keys)
                    candidates.append(self._build(strategy, outer, inner, kind, edges, selectivity, keys, probe))
                    budget.steps += 1
                elif strategy == "hash_join":
                    candidates.append(self._build(strategy, outer, inner, kind, edges, selectivity, keys))
                    budget.steps += 1
                else:
                    outer_keys = tuple(str(a) for a, _ in keys)
                    inner_keys = tuple(str(b) for _, b in keys)
                    pairs = [(outer, inner)] if first_only else [
                        (o, i)
                        for o in self._ordered_alternative(outer, alternatives.get(outer_set, ()), outer_keys)
                        for i in self._ordered_alternative(inner, alternatives.get(inner_set, ()), inner_keys)
                    ]
                    for o, i in pairs:
                        candidates.append(self._build(strategy, o, i, kind, edges, selectivity, keys))
                        budget.steps += 1
                if first_only and candidates:
                    return candidates, None
            if first_only and candidates:
                break

        if candidates:
            candidates.sort(key=lambda n: n.sort_key())
            return candidates, None

        keys = self._join_keys(query, edges, left)
        reason = self._infeasible_reason(kind, keys) or "no join condition (cartesian product)"
        failure = JoinFailure(left=left, right=right, reason=reason, cartesian=not edges)
        if self.strict:
            raise failure.error()
        logger.warning(
            "No feasible join strategy for %s and %s: %s; using nested loop fallback",
            failure.left_label,
            failure.right_label,
            reason,
        )
        fallback = self._build(
            "nested_loop", best[left], best[right], kind, edges, selectivity, keys, low_confidence=True
        )
        budget.steps += 1
        return [fallback], failure

    # ── Driver ───────────────────────────────────────────────────────────

    def enumerate(
        self,
        query: QuerySpec,
        *,
        edge_order: Sequence[JoinEdge] | None = None,
        deadline: float | None = None,
        cancel: threading.Event | None = None,
        explain: bool = False,
    ) -> EnumerationResult:
        """
        Choose a plan for ``query``.

        Args:
            edge_order: Join edges to apply, in order (defaults to
                ``query.join_edges()``).
            deadline: ``time.monotonic()`` value after which enumeration
                stops exploring.
            cancel: Event that stops exploration when set.
            explain: Keep every join candidate in the result.
        """
        keys = query.relation_keys
        scan_candidates = {key: tuple(self.access_paths(query, key)) for key in keys}
        budget = _Budget(
            max_steps=self.settings.max_join_enumeration_steps,
            deadline=deadline,
            cancel=cancel,
        )

        component = {key: frozenset((key,)) for key in keys}
        best: dict[frozenset[str], PlanNode] = {}
        alternatives: dict[frozenset[str], tuple[PlanNode, ...]] = {}
        for key in keys:
            chosen = self._final_choice(query, scan_candidates[key]) if len(keys) == 1 else scan_candidates[key][0]
            best[component[key]] = chosen
            alternatives[component[key]] = scan_candidates[key]

        edges = list(query.join_edges() if edge_order is None else edge_order)
        applied: list[JoinEdge] = []
        join_candidates: list[tuple[PlanNode, ...]] = []
        failures: list[JoinFailure] = []
        used: set[int] = set()

        def merge(left: frozenset[str], right: frozenset[str], group: list[JoinEdge]) -> None:
            first_only = budget.exhausted()
            candidates, failure = self.join_step(
                query, left, right, group, best, alternatives, budget, first_only=first_only
            )
            if failure is not None:
                failures.append(failure)
            if explain:
                join_candidates.append(tuple(candidates))
            merged = left | right
            for old in (left, right):
                best.pop(old, None)
                alternatives.pop(old, None)
            best[merged] = candidates[0]
            alternatives[merged] = tuple(candidates)
            for key in merged:
                component[key] = merged
            applied.extend(group)

        for i, edge in enumerate(edges):
            if i in used:
                continue
            left, right = component[edge.left], component[edge.right]
            used.add(i)
            if left == right:
                # both sides already joined; the edge became a filter of an earlier step
                applied.append(edge)
                continue
            group = [edge]
            for j in range(i + 1, len(edges)):
                other = edges[j]
                if j not in used and {component[other.left], component[other.right]} == {left, right}:
                    group.append(other)
                    used.add(j)
            merge(left, right, group)

        while len(best) > 1:
            ordered = sorted(best, key=lambda c: min(keys.index(k) for k in c))
            merge(ordered[0], ordered[1], [])

        root = next(iter(best.values()))
        if len(keys) > 1:
            root = self._final_choice(query, alternatives[root.relations])
        sort_cost, fraction = self._finish(query, root)
        if budget.reason:
            logger.info("Enumeration of %s truncated: %s", query.name, budget.reason)
        return EnumerationResult(
            root=root,
            scan_candidates=scan_candidates,
            join_candidates=tuple(join_candidates),
            steps=budget.steps,
            truncated=budget.reason is not None,
            truncation_reason=budget.reason,
            failures=tuple(failures),
            sort_cost=sort_cost,
            limit_fraction=fraction,
            edge_order=tuple(applied),
        )

    # ── ORDER BY and LIMIT ───────────────────────────────────────────────

    def _finish(self, query: QuerySpec, node: PlanNode) -> tuple[float, float]:
        """(explicit sort cost, charged fraction under LIMIT) for a final plan."""
        sort = 0.0
        if query.order_by:
            wanted = order_columns(query)
            if wanted is None or not node.delivers_order(wanted):
                sort = self.estimator.sort_cost(node.rows, node.width)
        fraction = 1.0
        if query.limit is not None and sort == 0.0:
            needed = query.limit + (query.offset or 0)
            fraction = min(1.0, needed / max(node.rows, 1.0))
        return sort, fraction

    def _final_choice(self, query: QuerySpec, candidates: Sequence[PlanNode]) -> PlanNode:
        def key(node: PlanNode) -> tuple[float, float, int]:
            sort, fraction = self._finish(query, node)
            return (round(node.cost * fraction + sort, 6), node.rows, node.kind.rank)

        return min(candidates, key=key)


def order_columns(query: QuerySpec, relation: str | None = None) -> tuple[str, ...] | None:
    """
    ORDER BY as qualified column names, when one index direction can
    deliver it. Returns None for mixed directions (always sorted
    explicitly) and, given ``relation``, an empty tuple when the ordering
    involves other relations.
    """
    if not query.order_by:
        return ()
    if len({item.descending for item in query.order_by}) > 1:
        return None
    columns = []
    for item in query.order_by:
        key = query.relation_of(item.column)
        if relation is not None and key != relation:
            return ()
        columns.append(f"{key}.{item.column.column}")
    return tuple(columns)


__all__ = [
    "EnumerationResult",
    "JoinFailure",
    "PlanEnumerator",
    "order_columns",
]
