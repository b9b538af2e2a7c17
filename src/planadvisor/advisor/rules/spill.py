"""
Rule: Spill Risk

Hash builds and sorts larger than their memory budget spill to temporary
files: a hash join splits into batches written and re-read from disk, a
sort becomes an external merge sort. Both add I/O the plan's cost already
includes as a penalty; this rule makes the cause visible.
"""

from __future__ import annotations

from planadvisor.advisor.context import AdvisoryContext
from planadvisor.advisor.models import Finding, FindingKind, ImpactBand, Severity
from planadvisor.advisor.registry import register_rule
from planadvisor.advisor.rules.base import Rule
from planadvisor.planner.path import NodePath
from planadvisor.planner.plan import HashJoin, MergeJoin, PlanNode


def _mib(size: float) -> str:
    return f"{size / (1024 * 1024):,.1f} MiB"


def _single_table(node: PlanNode) -> str | None:
    return getattr(node, "table", None)


@register_rule
class SpillRisk(Rule):
    """Hash builds and sorts that exceed their memory budgets."""

    rule_id = "SPILL_RISK"
    version = "1.0.0"
    kind = FindingKind.SPILL_RISK
    severity = Severity.WARNING
    description = "Hash joins and sorts expected to spill to disk"

    def analyze(self, ctx: AdvisoryContext) -> list[Finding]:
        settings = ctx.config.cost
        findings: list[Finding] = []

        for path, node in ctx.root.walk():
            if isinstance(node, HashJoin) and node.spill_bytes > 0:
                build_bytes = node.inner.rows * node.inner.width
                findings.append(self._hash_finding(ctx, path, node, build_bytes))
            elif isinstance(node, MergeJoin) and node.sort_cost > 0:
                for side, child in (("outer", node.outer), ("inner", node.inner)):
                    size = child.rows * child.width
                    if size > settings.sort_memory_budget:
                        findings.append(self._sort_finding(
                            ctx, path, size, f"the {side} input of a merge join", _single_table(child)
                        ))

        if ctx.result.sort_cost > 0:
            size = ctx.root.rows * ctx.root.width
            if size > settings.sort_memory_budget:
                table = _single_table(ctx.root)
                findings.append(self._sort_finding(ctx, NodePath.root(), size, "the ORDER BY", table))
        return [f for f in findings if self.applies_to(ctx, f.table)]

    def _hash_finding(
        self, ctx: AdvisoryContext, path: NodePath, node: HashJoin, build_bytes: float
    ) -> Finding:
        budget = ctx.config.cost.memory_budget_for_hash_build
        table = _single_table(node.inner)
        build = table or ", ".join(sorted(node.inner.relations))
        return self.finding(
            table=table,
            title=f"Hash join build side ({build}) exceeds the memory budget",
            rationale=(
                f"The build side holds ~{node.inner.rows:,.0f} rows of {node.inner.width} bytes "
                f"({_mib(build_bytes)}) against a budget of {_mib(budget)}, so about "
                f"{_mib(node.spill_bytes)} is written to temporary files and read back."
            ),
            remediation=(
                "Raise work_mem (or hash_mem_multiplier) for this query, select fewer "
                "columns from the build side, or filter it earlier so it fits in memory."
            ),
            metrics={
                "build_bytes": int(build_bytes),
                "budget_bytes": budget,
                "spill_bytes": node.spill_bytes,
            },
            impact_band=ImpactBand.MEDIUM if node.spill_bytes > budget else ImpactBand.LOW,
            assumptions=("Row width estimates reflect the projected columns",),
            verification_steps=(
                "Run EXPLAIN (ANALYZE, BUFFERS): 'Batches' above 1 on the Hash node "
                "confirms the spill",
            ),
            low_confidence=node.low_confidence,
            node_path=path,
        )

    def _sort_finding(
        self, ctx: AdvisoryContext, path: NodePath, size: float, what: str, table: str | None
    ) -> Finding:
        budget = ctx.config.cost.sort_memory_budget
        return self.finding(
            table=table,
            title=f"Sort for {what} exceeds the memory budget",
            rationale=(
                f"Sorting {_mib(size)} with a budget of {_mib(budget)} becomes an external "
                f"merge sort on disk."
            ),
            remediation=(
                "Add an index that delivers the order, add a LIMIT so a top-N sort "
                "suffices, or raise work_mem for this query."
            ),
            metrics={"sort_bytes": int(size), "budget_bytes": budget},
            impact_band=ImpactBand.LOW,
            assumptions=("Row width estimates reflect the projected columns",),
            verification_steps=(
                "Run EXPLAIN ANALYZE: 'Sort Method: external merge' confirms the spill",
            ),
            node_path=path,
        )
