"""
Rule: No Feasible Join Strategy

Reports join steps the enumerator could not implement with any enabled
strategy, and relations the query never connects (cartesian products).
The plan still contains a fallback nested loop at those steps, so every
cost in the report is low-confidence.
"""

from __future__ import annotations

import logging

from planadvisor.advisor.context import AdvisoryContext
from planadvisor.advisor.models import Finding, FindingKind, ImpactBand, Severity
from planadvisor.advisor.registry import register_rule
from planadvisor.advisor.rules.base import Rule
from planadvisor.planner.enumerator import JoinFailure
from planadvisor.planner.path import NodePath
from planadvisor.planner.plan import JoinNode

logger = logging.getLogger(__name__)


def _failure_path(ctx: AdvisoryContext, failure: JoinFailure) -> NodePath | None:
    wanted = failure.left | failure.right
    for path, node in ctx.root.walk():
        if isinstance(node, JoinNode) and node.relations == wanted:
            return path
    return None


@register_rule
class NoFeasibleJoinStrategy(Rule):
    rule_id = "NO_FEASIBLE_JOIN_STRATEGY"
    version = "1.0.0"
    kind = FindingKind.NO_FEASIBLE_JOIN_STRATEGY
    severity = Severity.WARNING
    description = "Join steps no enabled strategy can implement, and cartesian products"

    def analyze(self, ctx: AdvisoryContext) -> list[Finding]:
        findings = []
        for failure in ctx.result.failures:
            logger.debug("Join %s x %s has no feasible strategy: %s",
                         failure.left_label, failure.right_label, failure.reason)
            if failure.cartesian:
                title = f"No join condition between {failure.left_label} and {failure.right_label}"
                remediation = (
                    "Add the missing join condition. If the cross product is intended, "
                    "write it as an explicit CROSS JOIN."
                )
            else:
                title = f"No enabled strategy can join {failure.left_label} and {failure.right_label}"
                remediation = (
                    "Enable nested loop joins, or rewrite the join condition as an equality "
                    "so hash and merge joins apply."
                )
            findings.append(self.finding(
                title=title,
                rationale=(
                    f"{failure.reason}. The plan uses a nested loop over every pair of rows "
                    f"in its place, so costs from this step upward are unreliable."
                ),
                remediation=remediation,
                metrics={"cartesian": int(failure.cartesian)},
                impact_band=ImpactBand.UNKNOWN,
                verification_steps=(
                    "Run EXPLAIN and check the join node between these relations",
                ),
                low_confidence=True,
                node_path=_failure_path(ctx, failure),
            ))
        return findings
