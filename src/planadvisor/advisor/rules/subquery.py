"""
Rule: Subquery Rewrite

Two subquery shapes that PostgreSQL plans poorly:

NOT IN (SELECT ...):
    If the subquery can return NULL, NOT IN is never true, and the planner
    cannot turn it into an anti join. It usually becomes a hashed SubPlan,
    or a plain SubPlan re-run per row when the hash table would not fit.
    NOT EXISTS has the expected semantics and plans as an anti join.

Correlated subqueries:
    A subquery referencing the outer row that the planner cannot pull up
    runs once per outer row. Writing it as a join (or a semi join via
    EXISTS) lets the join strategies apply.
"""

from __future__ import annotations

from pydantic import Field

from planadvisor.advisor.context import AdvisoryContext
from planadvisor.advisor.models import Finding, FindingKind, ImpactBand, Severity
from planadvisor.advisor.registry import register_rule
from planadvisor.advisor.rules.base import Rule, RuleSettings
from planadvisor.query.predicates import Existence, ExistenceMode, conjuncts


class SubqueryRewriteSettings(RuleSettings):
    min_rows: int = Field(default=0, ge=0, description="Outer table size below which nothing is reported")


def _not_exists_sql(existence: Existence) -> str:
    inner = existence.subquery_column or existence.column.column
    outer = existence.column.to_sql()
    return (
        f"NOT EXISTS (SELECT 1 FROM {existence.relation} s "
        f"WHERE s.{inner} = {outer})"
    )


@register_rule
class SubqueryRewrite(Rule):
    """NOT IN and correlated subqueries with better-planned equivalents."""

    rule_id = "SUBQUERY_REWRITE"
    version = "1.0.0"
    kind = FindingKind.SUBQUERY_REWRITE
    severity = Severity.WARNING
    description = "NOT IN and correlated subqueries that have better-planned rewrites"
    settings_schema = SubqueryRewriteSettings

    def analyze(self, ctx: AdvisoryContext) -> list[Finding]:
        findings = []
        min_rows = int(self.threshold(ctx, "min_rows") or 0)
        for item in conjuncts(ctx.query.where):
            if not isinstance(item, Existence):
                continue
            key = ctx.query.relation_of(item.column) if item.column is not None else ctx.query.relation_keys[0]
            table = ctx.table(key)
            if table.row_count < min_rows or not self.applies_to(ctx, table.name):
                continue
            if item.mode is ExistenceMode.NOT_IN:
                findings.append(self._not_in(ctx, key, item))
            elif item.correlated:
                findings.append(self._correlated(ctx, key, item))
        return findings

    def _not_in(self, ctx: AdvisoryContext, key: str, item: Existence) -> Finding:
        table = ctx.table(key)
        return self.finding(
            table=table.name,
            column=item.column.column,
            title=f"NOT IN subquery on {item.relation} should be NOT EXISTS",
            rationale=(
                f"`{item.to_sql()}` returns no rows at all if the subquery yields a NULL, "
                f"and cannot be planned as an anti join. With {table.row_count:,} outer rows "
                f"it is evaluated as a SubPlan."
            ),
            remediation=f"Rewrite as {_not_exists_sql(item)}",
            metrics={"outer_rows": table.row_count},
            impact_band=ImpactBand.MEDIUM,
            assumptions=(
                "The subquery column may contain NULLs, or the NULL behaviour of NOT IN is not intended",
            ),
            verification_steps=(
                "EXPLAIN the rewrite: expect a Hash Anti Join or Nested Loop Anti Join",
                "Compare result counts before and after if the column can be NULL",
            ),
            node_path=ctx.scan_path(key),
        )

    def _correlated(self, ctx: AdvisoryContext, key: str, item: Existence) -> Finding:
        table = ctx.table(key)
        kind = item.mode.value.upper().replace("_", " ")
        join = "an anti join (LEFT JOIN ... WHERE s.key IS NULL)" if item.mode.negated else "a join"
        return self.finding(
            severity=Severity.INFO,
            table=table.name,
            column=item.column.column if item.column is not None else None,
            title=f"Correlated {kind} subquery on {item.relation} runs per outer row",
            rationale=(
                f"The subquery references the outer row of {table.name}. Unless the planner "
                f"pulls it up, it is executed once for each of ~{table.row_count:,} rows."
            ),
            remediation=f"Rewrite the subquery as {join} on {item.relation}",
            metrics={"outer_rows": table.row_count},
            impact_band=ImpactBand.UNKNOWN,
            assumptions=("The correlation is an equality on the subquery's key",),
            verification_steps=(
                "EXPLAIN the query: a 'SubPlan' node under the scan confirms per-row execution",
            ),
            node_path=ctx.scan_path(key),
        )
