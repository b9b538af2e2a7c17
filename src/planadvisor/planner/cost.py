"""
Cost model for scan and join strategies.

Uses PostgreSQL's cost model formulas with the constants from
CostSettings (passed in, never global):

- seq_page_cost       sequential page read
- random_page_cost    random page read
- cpu_tuple_cost      per heap row processed
- cpu_index_tuple_cost per index entry processed
- cpu_operator_cost   per qual / hash / comparison evaluated

Costs are relative: only comparisons between candidates of the same
query mean anything.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Any, Callable, Sequence

from planadvisor.config import CostSettings
from planadvisor.planner.classifier import AccessKind, Sargable
from planadvisor.planner.selectivity import (
    SelectivityEstimator,
    clamp_probability,
    clamp_row_estimate,
    join_rows,
)
from planadvisor.query.spec import JoinKind
from planadvisor.stats.models import Index, Table

logger = logging.getLogger(__name__)

# Per-entry overhead of a B-tree leaf tuple (item pointer + header)
INDEX_TUPLE_OVERHEAD = 16


@dataclass(frozen=True)
class ScanEstimate:
    strategy: str
    cost: float
    rows: float
    index_cost: float = 0.0
    heap_cost: float = 0.0
    cpu_cost: float = 0.0
    pages_fetched: float = 0.0
    selectivity: float = 1.0


@dataclass(frozen=True)
class JoinEstimate:
    strategy: str
    cost: float
    rows: float
    spill_bytes: int = 0
    sort_cost: float = 0.0


@dataclass(frozen=True)
class _IndexAccess:
    cost: float
    matching: float
    selectivity: float


def pages_fetched(tuples: float, pages: int) -> float:
    """
    Mackert-Lohman estimate of distinct heap pages touched when fetching
    ``tuples`` rows in random order from a table of ``pages`` pages,
    assuming the table fits in cache.
    """
    if tuples <= 0 or pages <= 0:
        return 0.0
    fetched = (2.0 * pages * tuples) / (2.0 * pages + tuples)
    return float(min(math.ceil(fetched), pages))


class CostEstimator:
    """
    Estimates costs of access paths and joins.

    Example:
        estimator = CostEstimator(config.cost)
        seq = estimator.seq_scan(orders, predicates)
        idx = estimator.index_scan(orders, classification, predicates)
    """

    def __init__(self, settings: CostSettings | None = None) -> None:
        self.settings = settings or CostSettings()

    def selectivity(self, table: Table) -> SelectivityEstimator:
        return SelectivityEstimator(table)

    # ── Index geometry ───────────────────────────────────────────────────

    def index_rows(self, table: Table, index: Index) -> float:
        if index.predicate is None:
            return float(table.row_count)
        return clamp_row_estimate(
            table.row_count * self.selectivity(table).selectivity(index.predicate)
        )

    def index_pages(self, table: Table, index: Index) -> int:
        entry_width = INDEX_TUPLE_OVERHEAD + sum(
            table.column(c).avg_width for c in index.stored_columns
        )
        return max(1, math.ceil(self.index_rows(table, index) * entry_width / self.settings.page_size))

    def index_height(self, leaf_pages: int) -> int:
        if leaf_pages <= 1:
            return 1
        return max(1, math.ceil(math.log(leaf_pages) / math.log(self.settings.index_fanout)))

    def _descent_cost(self, table: Table, index: Index) -> float:
        s = self.settings
        entries = max(self.index_rows(table, index), 2.0)
        height = self.index_height(self.index_pages(table, index))
        return math.ceil(math.log2(entries)) * s.cpu_operator_cost + (height + 1) * 50 * s.cpu_operator_cost

    def _index_access(self, table: Table, index: Index, bound: Sequence[Any]) -> _IndexAccess:
        """Descent + leaf pages + per-entry CPU for one index probe."""
        s = self.settings
        sel = self.selectivity(table).conjunction(bound) if bound else 1.0
        if index.predicate is not None and bound:
            # bound already holds the implied partial conditions; the index
            # itself only stores the qualifying rows
            index_fraction = clamp_probability(sel * table.row_count / self.index_rows(table, index))
        else:
            index_fraction = sel
        matching = table.row_count * sel
        leaf_pages = max(1, math.ceil(self.index_pages(table, index) * index_fraction))
        cost = (
            self._descent_cost(table, index)
            + leaf_pages * s.random_page_cost
            + matching * (s.cpu_index_tuple_cost + len(bound) * s.cpu_operator_cost)
        )
        return _IndexAccess(cost=cost, matching=matching, selectivity=sel)

    # ── Scans ────────────────────────────────────────────────────────────

    def seq_scan(self, table: Table, predicates: Sequence[Any] = ()) -> ScanEstimate:
        """pages * seq_page_cost + rows * (cpu_tuple_cost + quals * cpu_operator_cost)."""
        s = self.settings
        n = table.row_count
        io = table.pages(s.page_size) * s.seq_page_cost
        cpu = n * s.cpu_tuple_cost + n * len(predicates) * s.cpu_operator_cost
        sel = self.selectivity(table).conjunction(predicates)
        return ScanEstimate(
            strategy="seq_scan",
            cost=io + cpu,
            rows=clamp_row_estimate(n * sel),
            heap_cost=io,
            cpu_cost=cpu,
            pages_fetched=float(table.pages(s.page_size)),
            selectivity=sel,
        )

    def index_scan(
        self,
        table: Table,
        classification: Sargable,
        predicates: Sequence[Any] = (),
        *,
        index_only: bool = False,
    ) -> ScanEstimate:
        """
        Index descent, leaf pages and entries, then (unless index-only)
        heap fetches blended between random and sequential I/O by the
        leading key column's correlation.
        """
        s = self.settings
        index = classification.index
        access = self._index_access(table, index, classification.bound)
        matching = access.matching
        pages = table.pages(s.page_size)

        heap_io = 0.0
        fetched = 0.0
        if not index_only:
            fetched = pages_fetched(matching, pages)
            max_io = fetched * s.random_page_cost
            sel_pages = math.ceil(access.selectivity * pages)
            min_io = s.random_page_cost + max(sel_pages - 1, 0) * s.seq_page_cost
            correlation = table.column(index.leading_column).correlation
            heap_io = max_io + correlation * correlation * (min_io - max_io)

        cpu = matching * s.cpu_tuple_cost + matching * len(classification.residual) * s.cpu_operator_cost
        sel = self.selectivity(table).conjunction(_all(predicates, classification))
        return ScanEstimate(
            strategy="index_only_scan" if index_only else "index_scan",
            cost=access.cost + heap_io + cpu,
            rows=clamp_row_estimate(table.row_count * sel),
            index_cost=access.cost,
            heap_cost=heap_io,
            cpu_cost=cpu,
            pages_fetched=fetched,
            selectivity=sel,
        )

    def full_index_scan(
        self,
        table: Table,
        index: Index,
        predicates: Sequence[Any] = (),
        *,
        index_only: bool = False,
    ) -> ScanEstimate:
        """Reading a whole (non-partial) index in key order, for ORDER BY."""
        classification = Sargable(
            index=index,
            key_prefix_length=0,
            access_kind=AccessKind.RANGE,
            bound=(),
            residual=tuple(predicates),
        )
        return self.index_scan(table, classification, predicates, index_only=index_only)

    def bitmap_scan(
        self,
        table: Table,
        inputs: Sequence[Sargable],
        predicates: Sequence[Any] = (),
    ) -> ScanEstimate:
        """
        Bitmap heap scan over one index or the OR of several.

        Heap pages are read in physical order; the per-page cost slides
        from random_page_cost toward seq_page_cost as the fraction of the
        table fetched grows.
        """
        s = self.settings
        accesses = [self._index_access(table, c.index, c.bound) for c in inputs]
        index_cost = sum(a.cost for a in accesses)
        build = sum(a.matching for a in accesses) * s.cpu_operator_cost * s.bitmap_build_factor

        if len(inputs) == 1:
            heap_sel = accesses[0].selectivity
        else:
            heap_sel = clamp_probability(
                1.0 - math.prod(1.0 - a.selectivity for a in accesses)
            )
        matching = table.row_count * heap_sel
        pages = table.pages(s.page_size)
        fetched = pages_fetched(matching, pages)
        if fetched >= pages:
            per_page = s.seq_page_cost
        else:
            per_page = s.random_page_cost - (s.random_page_cost - s.seq_page_cost) * math.sqrt(
                fetched / pages
            )
        heap_io = fetched * per_page
        quals = len(predicates) if predicates else sum(len(c.bound) for c in inputs)
        cpu = matching * s.cpu_tuple_cost + matching * quals * s.cpu_operator_cost

        sel = self.selectivity(table).conjunction(predicates) if predicates else heap_sel
        return ScanEstimate(
            strategy="bitmap_scan",
            cost=index_cost + build + heap_io + cpu,
            rows=clamp_row_estimate(table.row_count * sel),
            index_cost=index_cost + build,
            heap_cost=heap_io,
            cpu_cost=cpu,
            pages_fetched=fetched,
            selectivity=sel,
        )

    def estimate_scan(
        self,
        table: Table,
        classification: Sargable | Sequence[Sargable] | None,
        strategy: str,
        predicates: Sequence[Any] = (),
    ) -> ScanEstimate:
        """Dispatch by strategy name."""
        dispatch: dict[str, Callable[[], ScanEstimate]] = {
            "seq_scan": lambda: self.seq_scan(table, predicates),
            "index_scan": lambda: self.index_scan(table, classification, predicates),
            "index_only_scan": lambda: self.index_scan(
                table, classification, predicates, index_only=True
            ),
            "bitmap_scan": lambda: self.bitmap_scan(
                table,
                list(classification) if isinstance(classification, (list, tuple)) else [classification],
                predicates,
            ),
        }
        if strategy not in dispatch:
            raise ValueError(f"Unknown scan strategy: {strategy}")
        if strategy != "seq_scan" and classification is None:
            raise ValueError(f"{strategy} needs a Sargable classification")
        return dispatch[strategy]()

    # ── Sorts and joins ──────────────────────────────────────────────────

    def sort_cost(self, rows: float, width: int) -> float:
        """n * log2(n) comparisons, plus spill I/O beyond the sort memory budget."""
        s = self.settings
        if rows < 2:
            return 0.0
        cost = rows * math.log2(rows) * s.cpu_tuple_cost * s.sort_cost_factor
        size = rows * width
        if size > s.sort_memory_budget:
            pages = math.ceil(size / s.page_size)
            cost += pages * 2 * s.seq_page_cost * s.spill_penalty_factor
        return cost

    def join_rows(self, left_rows: float, right_rows: float, kind: JoinKind, selectivity: float) -> float:
        return join_rows(left_rows, right_rows, kind, selectivity)

    def estimate_join(
        self,
        left_cost: float,
        left_rows: float,
        right_cost: float,
        right_rows: float,
        join_kind: JoinKind,
        strategy: str,
        *,
        selectivity: float = 1.0,
        inner_probe_cost: float | None = None,
        left_width: int = 32,
        right_width: int = 32,
        left_ordered: bool = False,
        right_ordered: bool = False,
    ) -> JoinEstimate:
        """
        Cost one join. ``left`` is the outer (probe) side, ``right`` the
        inner (build) side.
        """
        rows = join_rows(left_rows, right_rows, join_kind, selectivity)
        s = self.settings
        output = rows * s.cpu_tuple_cost

        if strategy == "nested_loop":
            if inner_probe_cost is not None:
                cost = left_cost + left_rows * inner_probe_cost + output
            else:
                cost = (
                    left_cost
                    + max(left_rows, 1.0) * right_cost
                    + left_rows * right_rows * s.cpu_operator_cost
                    + output
                )
            return JoinEstimate(strategy=strategy, cost=cost, rows=rows)

        if strategy == "hash_join":
            build_bytes = right_rows * right_width
            budget = s.memory_budget_for_hash_build
            penalty = 0.0
            spill = 0
            if build_bytes > budget:
                spill = int(build_bytes - budget)
                fraction = spill / build_bytes
                spilled_pages = math.ceil(spill / s.page_size) + math.ceil(
                    left_rows * left_width * fraction / s.page_size
                )
                penalty = spilled_pages * 2 * s.seq_page_cost * s.spill_penalty_factor
            cost = (
                left_cost
                + right_cost
                + right_rows * s.cpu_tuple_cost
                + left_rows * s.cpu_operator_cost
                + output
                + penalty
            )
            return JoinEstimate(strategy=strategy, cost=cost, rows=rows, spill_bytes=spill)

        if strategy == "merge_join":
            sorts = 0.0
            if not left_ordered:
                sorts += self.sort_cost(left_rows, left_width)
            if not right_ordered:
                sorts += self.sort_cost(right_rows, right_width)
            cost = left_cost + right_cost + sorts + (left_rows + right_rows) * s.cpu_tuple_cost + output
            return JoinEstimate(strategy=strategy, cost=cost, rows=rows, sort_cost=sorts)

        raise ValueError(f"Unknown join strategy: {strategy}")


def _all(predicates: Sequence[Any], classification: Sargable) -> list[Any]:
    """Every predicate the scan applies: the relation's own plus probe parameters."""
    items = list(predicates)
    ids = {id(p) for p in items}
    texts = {p.to_sql() for p in items}
    for p in classification.bound + classification.residual:
        if id(p) not in ids and p.to_sql() not in texts:
            items.append(p)
    return items

