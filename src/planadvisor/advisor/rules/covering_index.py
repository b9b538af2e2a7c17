"""
Rule: Covering Index

An index scan that fetches the heap row only to read a few columns the
index does not store. Adding them as INCLUDE columns lets the planner
use an index-only scan and skip the heap. Checked with a what-if re-plan
against the widened index.
"""

from __future__ import annotations

from pydantic import Field

from planadvisor.advisor.context import AdvisoryContext
from planadvisor.advisor.models import Finding, FindingKind, ImpactBand, Severity
from planadvisor.advisor.registry import register_rule
from planadvisor.advisor.rules.base import ImprovementSettings, Rule
from planadvisor.planner.plan import IndexOnlyScan, IndexScan


class CoveringIndexSettings(ImprovementSettings):
    max_include_columns: int = Field(default=3, ge=1, description="Most columns to suggest as INCLUDE")


@register_rule
class CoveringIndex(Rule):
    rule_id = "COVERING_INDEX"
    version = "1.0.0"
    kind = FindingKind.COVERING_INDEX
    severity = Severity.INFO
    description = "Index scans that become index-only with a few INCLUDE columns"
    settings_schema = CoveringIndexSettings

    def analyze(self, ctx: AdvisoryContext) -> list[Finding]:
        findings = []
        max_include = int(self.threshold(ctx, "max_include_columns"))
        min_improvement = float(self.threshold(ctx, "min_improvement"))
        current = ctx.result.total_cost

        for key, table in ctx.relations():
            scan = ctx.chosen_scan(key)
            if not isinstance(scan, IndexScan) or isinstance(scan, IndexOnlyScan):
                continue
            if not self.applies_to(ctx, table.name) or not ctx.index_advice_enabled(table.name):
                continue
            needed = ctx.query.columns_for(key)
            if needed is None:
                continue
            missing = sorted(needed - set(scan.index.stored_columns))
            if not missing or len(missing) > max_include:
                continue

            widened = scan.index.model_copy(update={
                "name": f"{scan.index.name}_covering",
                "include": scan.index.include + tuple(missing),
            })
            what_if = ctx.replan(snapshot=ctx.snapshot.with_table(
                table.without_index(scan.index.name).with_index(widened)
            ))
            chosen = what_if.chosen_scan(key)
            if not isinstance(chosen, IndexOnlyScan) or current <= 0:
                continue
            improvement = (current - what_if.total_cost) / current
            if improvement < min_improvement:
                continue

            findings.append(self.finding(
                table=table.name,
                column=missing[0],
                title=f"INCLUDE ({', '.join(missing)}) would make {scan.index.name} covering",
                rationale=(
                    f"The plan reads {table.name} through {scan.index.name} and then visits the "
                    f"heap for {', '.join(missing)}. Storing them in the index allows an "
                    f"index-only scan: estimated cost {current:,.2f} -> {what_if.total_cost:,.2f}."
                ),
                remediation=(
                    f"{widened.definition(table.name)}\n"
                    f"DROP INDEX {scan.index.name};"
                ),
                metrics={
                    "current_cost": round(current, 2),
                    "hypothetical_cost": round(what_if.total_cost, 2),
                    "improvement": round(improvement, 4),
                    "include_columns": len(missing),
                },
                impact_band=ImpactBand.from_ratio(current, what_if.total_cost),
                assumptions=(
                    "The visibility map is mostly set (the table is vacuumed regularly)",
                    "The wider index entries are acceptable for writes",
                ),
                verification_steps=(
                    "EXPLAIN (ANALYZE): expect 'Index Only Scan' with low 'Heap Fetches'",
                ),
                low_confidence=ctx.result.low_confidence,
                node_path=ctx.scan_path(key),
            ))
        return findings
