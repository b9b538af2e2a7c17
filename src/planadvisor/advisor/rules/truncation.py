"""
Rule: Enumeration Truncated

When the step bound, deadline or cancel event stopped the search early,
remaining joins were taken with their first feasible strategy. The plan is
valid but may not be the cheapest one.
"""

from __future__ import annotations

from planadvisor.advisor.context import AdvisoryContext
from planadvisor.advisor.models import Finding, FindingKind, ImpactBand, Severity
from planadvisor.advisor.registry import register_rule
from planadvisor.advisor.rules.base import Rule
from planadvisor.planner.path import NodePath


@register_rule
class EnumerationTruncated(Rule):
    rule_id = "ENUMERATION_TRUNCATED"
    version = "1.0.0"
    kind = FindingKind.ENUMERATION_TRUNCATED
    severity = Severity.INFO
    description = "Plan search stopped early by a work bound"

    def analyze(self, ctx: AdvisoryContext) -> list[Finding]:
        result = ctx.result
        if not result.truncated:
            return []
        reason = result.truncation_reason or "work bound"
        return [self.finding(
            title=f"Plan search stopped early ({reason})",
            rationale=(
                f"The enumerator costed {result.steps:,} candidates before the {reason} "
                f"was reached. Joins after that point used the first feasible strategy."
            ),
            remediation=(
                "Raise cost.max_join_enumeration_steps or the analysis deadline, "
                "or split the query into smaller parts."
            ),
            metrics={
                "steps": result.steps,
                "max_steps": ctx.config.cost.max_join_enumeration_steps,
            },
            impact_band=ImpactBand.UNKNOWN,
            low_confidence=True,
            node_path=NodePath.root(),
        )]
