"""
Rule: Suboptimal Join Order

The enumerator joins along the edges in the order the query lists them.
This rule re-plans with the edges ordered by increasing estimated
intermediate result size (smallest join first, then always the cheapest
connected extension) and reports the order when it is cheaper by the
configured margin.

Only all-inner join graphs are reordered: moving an outer, semi or anti
join changes the result.
"""

from __future__ import annotations

from planadvisor.advisor.context import AdvisoryContext
from planadvisor.advisor.models import Finding, FindingKind, ImpactBand, Severity
from planadvisor.advisor.registry import register_rule
from planadvisor.advisor.rules.base import ImprovementSettings, Rule
from planadvisor.planner.path import NodePath
from planadvisor.query.spec import JoinEdge, JoinKind


def order_by_intermediate_size(ctx: AdvisoryContext) -> list[JoinEdge]:
    """Greedy edge order that keeps intermediate results small."""
    enumerator = ctx.enumerator()
    rows = {key: ctx.result.scan_candidates[key][0].rows for key in ctx.query.relation_keys}
    remaining = list(ctx.query.join_edges())
    selectivity = {i: enumerator.edge_selectivity(ctx.query, e) for i, e in enumerate(remaining)}
    pending = list(range(len(remaining)))
    joined: set[str] = set()
    current_rows = 0.0
    order: list[JoinEdge] = []

    def estimate(i: int) -> float:
        edge = remaining[i]
        if not joined:
            return rows[edge.left] * rows[edge.right] * selectivity[i]
        new = edge.relations - joined
        if not new:
            return current_rows * selectivity[i]
        return current_rows * rows[next(iter(new))] * selectivity[i]

    while pending:
        connected = [i for i in pending if not joined or edge_touches(remaining[i], joined)]
        choice = min(connected or pending, key=lambda i: (estimate(i), i))
        if not connected and joined:
            # disconnected component: start it fresh, the enumerator joins components later
            current_rows = rows[remaining[choice].left] * rows[remaining[choice].right] * selectivity[choice]
        else:
            current_rows = estimate(choice)
        joined |= remaining[choice].relations
        order.append(remaining[choice])
        pending.remove(choice)
    return order


def edge_touches(edge: JoinEdge, joined: set[str]) -> bool:
    return bool(edge.relations & joined)


@register_rule
class SuboptimalJoinOrder(Rule):
    """Join orders cheaper than the one written."""

    rule_id = "SUBOPTIMAL_JOIN_ORDER"
    version = "1.0.0"
    kind = FindingKind.SUBOPTIMAL_JOIN_ORDER
    severity = Severity.INFO
    description = "Join orders that shrink intermediate results"
    settings_schema = ImprovementSettings

    def analyze(self, ctx: AdvisoryContext) -> list[Finding]:
        edges = ctx.query.join_edges()
        if len(edges) < 2 or any(e.kind is not JoinKind.INNER for e in edges):
            return []
        proposed = order_by_intermediate_size(ctx)
        if [e.describe() for e in proposed] == [e.describe() for e in ctx.result.edge_order]:
            return []

        current = ctx.result.total_cost
        what_if = ctx.replan(edge_order=proposed)
        if current <= 0:
            return []
        improvement = (current - what_if.total_cost) / current
        if improvement < float(self.threshold(ctx, "min_improvement")):
            return []

        steps = "; then ".join(e.describe() for e in proposed)
        return [self.finding(
            severity=Severity.WARNING if improvement >= 0.5 else Severity.INFO,
            title=f"Joining in a different order would cut plan cost by {improvement:.0%}",
            rationale=(
                f"Joining in the written order builds large intermediate results "
                f"(estimated cost {current:,.2f}). Starting from the most selective join "
                f"brings it to {what_if.total_cost:,.2f}."
            ),
            remediation=(
                f"Join order: {steps}. PostgreSQL reorders inner joins itself up to "
                f"join_collapse_limit; past that limit, write the joins in this order."
            ),
            metrics={
                "current_cost": round(current, 2),
                "reordered_cost": round(what_if.total_cost, 2),
                "improvement": round(improvement, 4),
                "joins": len(edges),
            },
            impact_band=ImpactBand.from_ratio(current, what_if.total_cost),
            assumptions=(
                "Join selectivities use 1/max(distinct) per equality key",
                "Columns are independent",
            ),
            verification_steps=(
                "Compare EXPLAIN (ANALYZE) row counts of each join in both orders",
            ),
            low_confidence=ctx.result.low_confidence or what_if.low_confidence,
            node_path=NodePath.root(),
        )]
