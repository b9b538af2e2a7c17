"""
Rule: Unindexed Foreign Key

A foreign key column used as a join key with no index leading with it.

PostgreSQL indexes the referenced (parent) key but never the referencing
column. Without that index:
- a nested loop from the parent side has nothing to probe and rescans
  the child table per outer row
- the join falls back to hashing the whole child table
- DELETE/UPDATE on the parent scans the child to check the constraint
"""

from __future__ import annotations

from planadvisor.advisor.context import AdvisoryContext
from planadvisor.advisor.models import Finding, FindingKind, ImpactBand, Severity
from planadvisor.advisor.registry import register_rule
from planadvisor.advisor.rules.base import LargeTableSettings, Rule
from planadvisor.advisor.rules.missing_index import index_name
from planadvisor.planner.path import NodePath
from planadvisor.planner.plan import JoinNode
from planadvisor.query.spec import JoinEdge
from planadvisor.stats.models import Index


def join_path(ctx: AdvisoryContext, edge: JoinEdge) -> NodePath | None:
    """Path of the join node that applies ``edge``."""
    for path, node in ctx.root.walk():
        if isinstance(node, JoinNode) and edge in node.edges:
            return path
    return None


@register_rule
class UnindexedForeignKey(Rule):
    """Join keys that reference another table but have no index of their own."""

    rule_id = "UNINDEXED_FOREIGN_KEY"
    version = "1.0.0"
    kind = FindingKind.UNINDEXED_FOREIGN_KEY
    severity = Severity.WARNING
    description = "Foreign key join columns without a supporting index"
    settings_schema = LargeTableSettings

    def analyze(self, ctx: AdvisoryContext) -> list[Finding]:
        findings: list[Finding] = []
        seen: set[tuple[str, str]] = set()
        for edge in ctx.query.join_edges():
            for pair in edge.equi_keys:
                for ref in pair:
                    key = ctx.query.relation_of(ref)
                    table = ctx.table(key)
                    column = table.column(ref.column)
                    if column.references is None or (table.name, column.name) in seen:
                        continue
                    if table.has_index_leading_with((column.name,)):
                        continue
                    if not self.applies_to(ctx, table.name) or not ctx.index_advice_enabled(table.name):
                        continue
                    seen.add((table.name, column.name))
                    large = table.row_count >= ctx.large_table_rows(self.rule_id, table.name)
                    index = Index(name=index_name(table.name, (column.name,)), columns=(column.name,))
                    findings.append(self.finding(
                        severity=Severity.WARNING if large else Severity.INFO,
                        table=table.name,
                        column=column.name,
                        title=f"Foreign key {table.name}.{column.name} has no index",
                        rationale=(
                            f"{table.name}.{column.name} references {column.references} and is "
                            f"joined on in {edge.describe()}, but no index leads with it. Joins "
                            f"from {column.referenced_table} cannot probe {table.name} "
                            f"(~{table.row_count:,} rows) and constraint checks on parent "
                            f"deletes scan it."
                        ),
                        remediation=index.definition(table.name),
                        metrics={"table_rows": table.row_count},
                        impact_band=ImpactBand.MEDIUM if large else ImpactBand.LOW,
                        assumptions=(
                            "Queries join or filter from the referenced side",
                        ),
                        verification_steps=(
                            "EXPLAIN the join after creating the index: a parameterized "
                            "index scan should appear on the inner side of a nested loop",
                        ),
                        node_path=join_path(ctx, edge),
                    ))
        return findings
