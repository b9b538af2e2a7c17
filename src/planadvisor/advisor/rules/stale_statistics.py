"""
Rule: Stale Statistics

Every estimate in the report comes from the table statistics. When they
were collected long ago, distinct counts and most-common values may no
longer describe the data and the chosen plan may be wrong. Tables with no
recorded analysis time are not reported.
"""

from __future__ import annotations

from datetime import timezone

from pydantic import Field

from planadvisor.advisor.context import AdvisoryContext
from planadvisor.advisor.models import Finding, FindingKind, Severity
from planadvisor.advisor.registry import register_rule
from planadvisor.advisor.rules.base import Rule, RuleSettings


class StaleStatisticsSettings(RuleSettings):
    max_hours: float | None = Field(
        default=None,
        gt=0,
        description="Age limit in hours (default: AdvisorConfig.stale_statistics_hours)",
    )


@register_rule
class StaleStatistics(Rule):
    rule_id = "STATISTICS_STALE"
    version = "1.0.0"
    kind = FindingKind.STATISTICS_STALE
    severity = Severity.WARNING
    description = "Tables whose statistics are older than the staleness limit"
    settings_schema = StaleStatisticsSettings

    def analyze(self, ctx: AdvisoryContext) -> list[Finding]:
        max_hours = self.threshold(ctx, "max_hours") or ctx.config.stale_statistics_hours
        now = ctx.now if ctx.now.tzinfo else ctx.now.replace(tzinfo=timezone.utc)
        findings: list[Finding] = []
        seen: set[str] = set()
        for key, table in ctx.relations():
            if table.name in seen or table.analyzed_at is None or not self.applies_to(ctx, table.name):
                continue
            seen.add(table.name)
            analyzed = table.analyzed_at
            if analyzed.tzinfo is None:
                analyzed = analyzed.replace(tzinfo=timezone.utc)
            age_hours = (now - analyzed).total_seconds() / 3600
            if age_hours <= max_hours:
                continue
            findings.append(self.finding(
                table=table.name,
                title=f"Statistics for {table.name} are {age_hours / 24:,.1f} days old",
                rationale=(
                    f"{table.name} was last analyzed at {analyzed.isoformat()}, older than the "
                    f"{max_hours:,.0f} hour limit. Row counts and distinct-value estimates "
                    f"behind this report may have drifted."
                ),
                remediation=f"ANALYZE {table.name};",
                metrics={"age_hours": round(age_hours, 1), "max_hours": max_hours},
                verification_steps=(
                    "Re-run the advisor after ANALYZE and compare the chosen plan",
                ),
                low_confidence=True,
                node_path=ctx.scan_path(key),
            ))
        return findings
