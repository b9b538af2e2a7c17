"""
AdvisoryContext: everything a report rule may look at.

Built once per analysis and shared read-only by every rule. Rules that
need a what-if answer (a hypothetical index, a different join order)
re-enumerate through ``replan`` against a private snapshot; the
statistics store and the chosen plan are never modified.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Iterator, Mapping, Sequence

from planadvisor.config import AdvisorConfig
from planadvisor.planner.classifier import NonSargable
from planadvisor.planner.cost import CostEstimator
from planadvisor.planner.enumerator import EnumerationResult, PlanEnumerator
from planadvisor.planner.path import NodePath
from planadvisor.planner.plan import PlanNode, ScanNode
from planadvisor.query.spec import JoinEdge, QuerySpec
from planadvisor.stats.models import Table
from planadvisor.stats.store import StatisticsSnapshot


@dataclass(frozen=True)
class AdvisoryContext:
    """
    Read-only inputs of the report rules.

    Attributes:
        query: The analyzed query.
        snapshot: Statistics snapshot the plan was built from.
        result: Enumeration result with the chosen plan.
        config: Advisor configuration.
        now: Reference time for staleness checks.
        non_sargable: Intrinsically non-SARGable conjuncts per relation key.
    """

    query: QuerySpec
    snapshot: StatisticsSnapshot
    result: EnumerationResult
    config: AdvisorConfig
    now: datetime
    non_sargable: Mapping[str, tuple[NonSargable, ...]] = field(default_factory=dict)

    @property
    def root(self) -> PlanNode:
        return self.result.root

    @property
    def estimator(self) -> CostEstimator:
        return CostEstimator(self.config.cost)

    def table(self, key: str) -> Table:
        """Statistics of the table behind relation ``key``."""
        return self.snapshot.get_table(self.query.relation(key).table)

    def relations(self) -> Iterator[tuple[str, Table]]:
        for key in self.query.relation_keys:
            yield key, self.table(key)

    def chosen_scan(self, key: str) -> ScanNode | None:
        return self.result.chosen_scan(key)

    def path_of(self, target: PlanNode) -> NodePath | None:
        for path, node in self.root.walk():
            if node is target:
                return path
        return None

    def scan_path(self, key: str) -> NodePath | None:
        for path, node in self.root.walk():
            if node.kind.is_scan and getattr(node, "relation", None) == key:
                return path
        return None

    def threshold(self, rule_id: str, name: str, default: Any = None) -> Any:
        return self.config.get_rule_threshold(rule_id, name, default)

    def large_table_rows(self, rule_id: str, table: str) -> int:
        """Per-rule threshold, else the table override, else the global default."""
        rule = self.config.rules.get(rule_id)
        if rule is not None and "large_table_rows" in rule.thresholds:
            return int(rule.thresholds["large_table_rows"])
        return self.config.large_table_rows(table)

    def index_advice_enabled(self, table: str) -> bool:
        return not self.config.get_table_override(table, "index_disabled", False)

    def replan(
        self,
        *,
        snapshot: StatisticsSnapshot | None = None,
        edge_order: Sequence[JoinEdge] | None = None,
    ) -> EnumerationResult:
        """Enumerate the same query again under different assumptions."""
        enumerator = PlanEnumerator(snapshot or self.snapshot, self.config.cost)
        return enumerator.enumerate(self.query, edge_order=edge_order)

    def enumerator(self) -> PlanEnumerator:
        return PlanEnumerator(self.snapshot, self.config.cost)
