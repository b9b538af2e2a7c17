"""
Rule: Missing Index

Proposes an index for a large relation that is read without a seek, and
keeps the proposal only if a what-if re-plan with the hypothetical index
beats the chosen plan by the configured margin.

The proposed key follows the equality-before-range rule: equality columns
first (most selective first), then at most one range column. With no
range predicate, ORDER BY columns of the same relation are appended so
the index can also deliver the order.
"""

from __future__ import annotations

from planadvisor.advisor.context import AdvisoryContext
from planadvisor.advisor.models import Finding, FindingKind, ImpactBand, Severity
from planadvisor.advisor.registry import register_rule
from planadvisor.advisor.rules.base import ImprovementSettings, LargeTableSettings, Rule
from planadvisor.planner.classifier import AccessKind, NonSargable, PredicateClassifier
from planadvisor.planner.enumerator import order_columns
from planadvisor.planner.plan import IndexScan
from planadvisor.planner.selectivity import SelectivityEstimator
from planadvisor.stats.models import Index, Table


def proposed_key(ctx: AdvisoryContext, key: str, table: Table) -> tuple[str, ...]:
    """Index key columns for the local predicates of relation ``key``."""
    classifier = PredicateClassifier(table, key)
    estimator = SelectivityEstimator(table)
    equality: dict[str, float] = {}
    ranges: dict[str, float] = {}
    for predicate in ctx.query.local_predicates(key):
        access = classifier.assess(predicate)
        if isinstance(access, NonSargable):
            continue
        columns = {c.column for c in predicate.columns()}
        if len(columns) != 1:
            continue
        column = columns.pop()
        target = equality if access is AccessKind.EQUALITY else ranges
        target[column] = min(estimator.selectivity(predicate), target.get(column, 1.0))

    key_columns = sorted(equality, key=lambda c: (equality[c], c))
    remaining = {c: s for c, s in ranges.items() if c not in equality}
    if remaining:
        key_columns.append(min(remaining, key=lambda c: (remaining[c], c)))
    else:
        wanted = order_columns(ctx.query, key) or ()
        for qualified in wanted:
            column = qualified.split(".", 1)[1]
            if column not in key_columns:
                key_columns.append(column)
    return tuple(key_columns)


def index_name(table: str, columns: tuple[str, ...], suffix: str = "") -> str:
    return f"ix_{table}_{'_'.join(columns)}{suffix}"


class MissingIndexSettings(ImprovementSettings, LargeTableSettings):
    pass


@register_rule
class MissingIndex(Rule):
    """Index recommendations confirmed by a what-if re-plan."""

    rule_id = "MISSING_INDEX"
    version = "1.0.0"
    kind = FindingKind.MISSING_INDEX
    severity = Severity.WARNING
    description = "Indexes that would make the chosen plan cheaper (what-if checked)"
    settings_schema = MissingIndexSettings

    def analyze(self, ctx: AdvisoryContext) -> list[Finding]:
        findings: list[Finding] = []
        min_improvement = float(self.threshold(ctx, "min_improvement"))
        current = ctx.result.total_cost

        for key, table in ctx.relations():
            if not self.applies_to(ctx, table.name) or not ctx.index_advice_enabled(table.name):
                continue
            if table.row_count < ctx.large_table_rows(self.rule_id, table.name):
                continue
            scan = ctx.chosen_scan(key)
            if isinstance(scan, IndexScan) and scan.classification is not None:
                continue
            columns = proposed_key(ctx, key, table)
            if not columns or table.has_index_leading_with(columns):
                continue

            hypothetical = Index(name=index_name(table.name, columns), columns=columns)
            what_if = ctx.replan(snapshot=ctx.snapshot.with_table(table.with_index(hypothetical)))
            used = any(
                getattr(node, "index", None) == hypothetical
                or any(c.index == hypothetical for c in getattr(node, "inputs", ()))
                for _, node in what_if.root.walk()
            )
            if not used or current <= 0:
                continue
            improvement = (current - what_if.total_cost) / current
            if improvement < min_improvement:
                continue

            scan_label = scan.kind.label if scan is not None else "scan"
            findings.append(self.finding(
                table=table.name,
                column=columns[0],
                title=f"Index on {table.name}({', '.join(columns)}) would cut plan cost by {improvement:.0%}",
                rationale=(
                    f"{table.name} (~{table.row_count:,} rows) is read with a {scan_label} and "
                    f"no index seek. With {hypothetical.name} the estimated plan cost drops "
                    f"from {current:,.2f} to {what_if.total_cost:,.2f}."
                ),
                remediation=hypothetical.definition(table.name),
                metrics={
                    "current_cost": round(current, 2),
                    "hypothetical_cost": round(what_if.total_cost, 2),
                    "improvement": round(improvement, 4),
                    "table_rows": table.row_count,
                },
                impact_band=ImpactBand.from_ratio(current, what_if.total_cost),
                assumptions=(
                    "Column statistics are current",
                    "Predicate columns are independent (selectivities multiply)",
                    "Write overhead of the extra index is acceptable",
                ),
                verification_steps=(
                    f"Create the index (CONCURRENTLY in production) and run ANALYZE {table.name}",
                    f"EXPLAIN the query and confirm it uses {hypothetical.name}",
                ),
                low_confidence=ctx.result.low_confidence,
                node_path=ctx.scan_path(key),
            ))
        return findings
