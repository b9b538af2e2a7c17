"""
Rule: Non-SARGable Predicate

Reports WHERE conjuncts that no index on their column could serve.

Why it matters:
- A function, cast or arithmetic on the column runs for every row, so the
  planner falls back to scanning and filtering
- A leading-wildcard LIKE gives the B-tree no key range to descend to
- A text column compared to a number casts the column, not the constant
- The SQL "looks fine", which is why these survive code review

Subquery tests are left to SUBQUERY_REWRITE, which has more specific
advice for them.
"""

from __future__ import annotations

from typing import Callable

from pydantic import Field

from planadvisor.advisor.context import AdvisoryContext
from planadvisor.advisor.models import Finding, FindingKind, ImpactBand, Severity
from planadvisor.advisor.registry import register_rule
from planadvisor.advisor.rules.base import LargeTableSettings, Rule
from planadvisor.planner.classifier import NonSargable, NonSargableReason
from planadvisor.query.predicates import FunctionWrapped


def _function_fix(item: NonSargable) -> str:
    predicate = item.predicate
    if isinstance(predicate, FunctionWrapped):
        wrapped = predicate.wrapped_sql(qualify=False)
        if predicate.wrapper == "COALESCE":
            return (
                f"Split the NULL case into its own branch, e.g. "
                f"`({predicate.inner.to_sql(qualify=False)} OR {predicate.inner.column.column} IS NULL)`, "
                f"so each branch can use an index."
            )
        if predicate.is_arithmetic:
            return (
                f"Move the arithmetic to the constant side so {predicate.inner.column.column} "
                f"stands alone in the comparison."
            )
        if predicate.wrapper in ("DATE", "EXTRACT", "DATE_TRUNC", "YEAR"):
            return (
                f"Compare the bare column against a half-open range "
                f"(`{predicate.inner.column.column} >= start AND {predicate.inner.column.column} < end`) "
                f"instead of {wrapped}."
            )
        return (
            f"Rewrite so the column stands alone, or create an expression index: "
            f"CREATE INDEX ON <table> (({wrapped}));"
        )
    return "Rewrite so the column stands alone, or create an expression index on the same expression."


_FIXES: dict[NonSargableReason, Callable[[NonSargable], str]] = {
    NonSargableReason.FUNCTION_ON_COLUMN: _function_fix,
    NonSargableReason.LEADING_WILDCARD: lambda item: (
        "Use a trigram index (CREATE EXTENSION pg_trgm; CREATE INDEX ... USING gin "
        "(column gin_trgm_ops)) or full-text search for substring matches."
    ),
    NonSargableReason.NON_CONSTANT_PATTERN: lambda item: (
        "Bind the pattern as a constant with a literal prefix so the planner can derive a key range."
    ),
    NonSargableReason.NEGATED_OPERATOR: lambda item: (
        "Express the condition positively (IN the wanted values, or a range), or keep it "
        "as a filter behind a more selective indexed predicate."
    ),
    NonSargableReason.ROW_DEPENDENT_OPERAND: lambda item: (
        "Compare against a constant or parameter; when the value comes from another table, "
        "express it as a join condition."
    ),
    NonSargableReason.TYPE_COERCION: lambda item: (
        "Compare against a literal of the column's type (quote the value) so the cast "
        "applies to the constant instead of the column."
    ),
    NonSargableReason.MIXED_DISJUNCTION: lambda item: (
        "Index every OR branch's column so a BitmapOr can combine them, or split the "
        "query into a UNION ALL of indexable branches."
    ),
}


class NonSargableSettings(LargeTableSettings):
    min_rows: int = Field(
        default=1000,
        ge=0,
        description="Skip tables smaller than this; scanning them is cheap anyway",
    )


@register_rule
class NonSargablePredicate(Rule):
    """Conjuncts that cannot drive an index seek, with a rewrite per reason."""

    rule_id = "NON_SARGABLE_PREDICATE"
    version = "1.0.0"
    kind = FindingKind.NON_SARGABLE_PREDICATE
    severity = Severity.WARNING
    description = "Predicates that no index can serve (functions, casts, wildcards)"
    settings_schema = NonSargableSettings

    def analyze(self, ctx: AdvisoryContext) -> list[Finding]:
        findings: list[Finding] = []
        min_rows = self.threshold(ctx, "min_rows")
        for key, table in ctx.relations():
            if not self.applies_to(ctx, table.name) or table.row_count < min_rows:
                continue
            large = table.row_count >= ctx.large_table_rows(self.rule_id, table.name)
            for item in ctx.non_sargable.get(key, ()):
                if item.reason is NonSargableReason.SUBQUERY:
                    continue
                columns = sorted({c.column for c in item.predicate.columns()}) if item.predicate else []
                findings.append(self.finding(
                    severity=Severity.WARNING if large else Severity.INFO,
                    table=table.name,
                    column=columns[0] if columns else None,
                    title=f"Non-SARGable predicate on {table.name}: {item.predicate.to_sql(qualify=False)}",
                    rationale=(
                        f"{item.detail}. Every one of ~{table.row_count:,} rows of {table.name} "
                        f"must be read and tested."
                    ),
                    remediation=_FIXES[item.reason](item),
                    metrics={"table_rows": table.row_count},
                    impact_band=ImpactBand.MEDIUM if large else ImpactBand.LOW,
                    assumptions=(
                        "The rewritten predicate is selective enough for an index to pay off",
                    ),
                    verification_steps=(
                        "Apply the rewrite and run EXPLAIN: the predicate should appear as "
                        "an Index Cond rather than a Filter",
                    ),
                    node_path=ctx.scan_path(key),
                ))
        return findings
