"""
Rule: Offset Pagination

OFFSET n still produces and discards the first n rows, so each page is
slower than the one before. Keyset pagination seeks past the last row
seen instead: WHERE (sort key) > (last value) ORDER BY sort key LIMIT n.
"""

from __future__ import annotations

from pydantic import Field

from planadvisor.advisor.context import AdvisoryContext
from planadvisor.advisor.models import Finding, FindingKind, ImpactBand, Severity
from planadvisor.advisor.registry import register_rule
from planadvisor.advisor.rules.base import Rule, RuleSettings
from planadvisor.planner.path import NodePath


class OffsetPaginationSettings(RuleSettings):
    min_offset: int = Field(default=1000, ge=1, description="Smallest OFFSET worth reporting")


@register_rule
class OffsetPagination(Rule):
    """Deep OFFSET pagination."""

    rule_id = "OFFSET_PAGINATION"
    version = "1.0.0"
    kind = FindingKind.OFFSET_PAGINATION
    severity = Severity.WARNING
    description = "Deep OFFSET pagination that keyset pagination would avoid"
    settings_schema = OffsetPaginationSettings

    def analyze(self, ctx: AdvisoryContext) -> list[Finding]:
        query = ctx.query
        min_offset = int(self.threshold(ctx, "min_offset"))
        if query.offset is None or query.offset < min_offset:
            return []

        if query.order_by:
            keys = ", ".join(item.column.to_sql() for item in query.order_by)
            remediation = (
                f"Paginate on the sort key instead: WHERE ({keys}) > (:last_values) "
                f"ORDER BY {keys} LIMIT {query.limit or 'n'}. Make the key unique by adding "
                f"the primary key as a last tie-breaker."
            )
        else:
            remediation = (
                "Add an ORDER BY on a unique key (pages are otherwise not stable) and paginate "
                "with WHERE key > :last_key ORDER BY key LIMIT n."
            )
        metrics = {"offset": query.offset}
        if query.limit is not None:
            metrics["limit"] = query.limit
        return [self.finding(
            table=ctx.query.relations[0].table,
            title=f"OFFSET {query.offset:,} reads and discards that many rows on every page",
            rationale=(
                "Every row before the offset is produced, sorted if needed, and thrown away. "
                "Page cost grows with the page number."
            ),
            remediation=remediation,
            metrics=metrics,
            impact_band=ImpactBand.HIGH if query.offset >= 100 * min_offset else ImpactBand.MEDIUM,
            assumptions=("Clients page forward sequentially",),
            verification_steps=(
                "EXPLAIN (ANALYZE) a deep page: the Limit node's input row count includes the offset",
            ),
            node_path=NodePath.root(),
        )]
