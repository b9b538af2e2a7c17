"""
Output renderers for different formats.

Separates presentation logic from analysis logic.
Uses schema.py Pydantic models as the single source of truth
for JSON serialization; no manual dict construction.
"""

from __future__ import annotations

import json
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, Sequence

from planadvisor.output.schema import (
    AdvisorReportSchema,
    FindingSchema,
    MetadataSchema,
    PlanSchema,
    RuleRunSchema,
    SummarySchema,
)

if TYPE_CHECKING:
    from planadvisor.advisor.models import AdvisorReport, Finding, RuleRun


class OutputFormat(str, Enum):
    """Supported output formats."""

    TEXT = "text"
    JSON = "json"
    MARKDOWN = "markdown"


def render(report: "AdvisorReport", format: OutputFormat = OutputFormat.TEXT) -> str:
    """
    Render a report in the specified format.

    Args:
        report: Report to render
        format: Output format (text, json, markdown)

    Returns:
        Formatted string
    """
    renderer = _RENDERERS.get(OutputFormat(format))
    if renderer is None:
        raise ValueError(f"Unknown output format: {format}")
    return renderer(report)


def render_many(reports: Sequence["AdvisorReport"], format: OutputFormat = OutputFormat.TEXT) -> str:
    """Render several reports; JSON output is a single array."""
    fmt = OutputFormat(format)
    if fmt is OutputFormat.JSON:
        return json.dumps([_report_to_dict(r) for r in reports], indent=2, default=str)
    separator = "\n\n" if fmt is OutputFormat.TEXT else "\n\n---\n\n"
    return separator.join(render(r, fmt) for r in reports)


# =============================================================================
# Schema-based serialization (single source of truth)
# =============================================================================


def _report_to_schema(report: "AdvisorReport") -> AdvisorReportSchema:
    summary = report.summary()
    return AdvisorReportSchema(
        query=report.query,
        sql=report.sql,
        summary=SummarySchema(
            total=summary["total"],
            critical=summary["critical"],
            warning=summary["warning"],
            info=summary["info"],
            rules_passed=summary["rules_passed"],
            rules_skipped=summary["rules_skipped"],
            rules_failed=summary["rules_failed"],
            low_confidence=report.low_confidence,
            success_rate=summary["success_rate"],
        ),
        plan=PlanSchema(
            total_cost=round(report.total_cost, 2),
            estimated_rows=round(report.estimated_rows, 1),
            text=report.plan_text,
            alternatives=list(report.alternatives),
        ),
        findings=[_finding_to_schema(f) for f in report.findings],
        rule_runs=[_rule_run_to_schema(r) for r in report.rule_runs],
        errors=list(report.errors),
        metadata=MetadataSchema(**report.metadata.model_dump()),
    )


def _finding_to_schema(finding: "Finding") -> FindingSchema:
    return FindingSchema(
        kind=finding.kind.value,
        rule_id=finding.rule_id,
        severity=finding.severity.value,
        table=finding.table,
        column=finding.column,
        title=finding.title,
        rationale=finding.rationale,
        remediation=finding.remediation,
        impact_band=finding.impact_band.value,
        assumptions=list(finding.assumptions),
        verification_steps=list(finding.verification_steps),
        metrics=finding.metrics,
        low_confidence=finding.low_confidence,
        node_path=list(finding.node_path.segments) if finding.node_path else None,
    )


def _rule_run_to_schema(run: "RuleRun") -> RuleRunSchema:
    return RuleRunSchema(
        rule_id=run.rule_id,
        version=run.version,
        status=run.status.value,
        runtime_ms=run.runtime_ms,
        findings_count=run.findings_count,
        error_summary=run.error_summary,
        skip_reason=run.skip_reason,
    )


def _report_to_dict(report: "AdvisorReport") -> dict[str, Any]:
    return _report_to_schema(report).model_dump(mode="json")


def _severity_icon(severity: Any) -> str:
    return {"critical": "🔴", "warning": "🟡", "info": "🔵"}.get(severity.value, "•")


# =============================================================================
# Text renderer (terminal)
# =============================================================================


def render_text(report: "AdvisorReport") -> str:
    """Render a report as plain terminal text."""
    lines: list[str] = []
    summary = report.summary()

    lines.append("=" * 60)
    lines.append(f"PlanAdvisor Report: {report.query}")
    lines.append("=" * 60)
    lines.append("")
    if report.sql:
        lines.append(report.sql)
        lines.append("")

    lines.append(f"Chosen plan (total cost {report.total_cost:,.2f}):")
    for line in report.plan_text.splitlines():
        lines.append(f"  {line}")
    lines.append("")

    if report.alternatives:
        lines.append("Candidates considered:")
        for alt in report.alternatives:
            lines.append(f"  {alt}")
        lines.append("")

    lines.append("Summary:")
    lines.append(f"  Total Findings: {summary['total']}")
    if summary["critical"]:
        lines.append(f"  🔴 Critical: {summary['critical']}")
    if summary["warning"]:
        lines.append(f"  🟡 Warnings: {summary['warning']}")
    if summary["info"]:
        lines.append(f"  🔵 Info: {summary['info']}")
    if summary["truncated"]:
        lines.append("  ⚠ Plan search was truncated")
    lines.append("")

    if report.rule_runs:
        lines.append(
            f"Rules: {summary['rules_passed']} passed, {summary['rules_skipped']} skipped, "
            f"{summary['rules_failed']} failed"
        )
        for error in report.errors:
            lines.append(f"  ✗ {error.get('rule_id', '?')}: {error.get('message', '')}")
        lines.append("")

    if report.findings:
        lines.append("-" * 60)
        lines.append("FINDINGS")
        lines.append("-" * 60)

        for i, finding in enumerate(report.findings, 1):
            lines.append("")
            confidence = " (low confidence)" if finding.low_confidence else ""
            lines.append(f"[{i}] {_severity_icon(finding.severity)} {finding.title}{confidence}")
            lines.append(f"    Kind: {finding.kind.value}")
            if finding.node_path is not None:
                lines.append(f"    Location: {finding.node_path}")
            if finding.impact_band.value != "UNKNOWN":
                lines.append(f"    Impact: {finding.impact_band.value}")
            lines.append("")
            lines.append(f"    {finding.rationale}")

            if finding.remediation:
                lines.append("")
                lines.append("    Remediation:")
                for line in finding.remediation.split("\n"):
                    lines.append(f"      {line}")

            if finding.assumptions:
                lines.append("")
                lines.append("    Assumptions:")
                for assumption in finding.assumptions:
                    lines.append(f"      • {assumption}")

            if finding.verification_steps:
                lines.append("")
                lines.append("    Verification:")
                for step in finding.verification_steps:
                    lines.append(f"      □ {step}")
    else:
        lines.append("✓ No issues found")

    lines.append("")
    lines.append("=" * 60)
    return "\n".join(lines)


# =============================================================================
# JSON renderer (uses schema models)
# =============================================================================


def render_json(report: "AdvisorReport", indent: int = 2) -> str:
    """
    Render a report as stable JSON.

    Suitable for CI/CD integration and log aggregation.
    """
    return json.dumps(_report_to_dict(report), indent=indent, default=str)


# =============================================================================
# Markdown renderer
# =============================================================================


def render_markdown(report: "AdvisorReport") -> str:
    """
    Render a report as Markdown.

    Suitable for pull request comments, issues and documentation.
    """
    lines: list[str] = []
    summary = report.summary()

    lines.append(f"# PlanAdvisor Report: `{report.query}`")
    lines.append("")

    if summary["critical"]:
        lines.append("🔴 **Critical issues found**")
    elif summary["warning"]:
        lines.append("🟡 **Warnings found**")
    elif report.low_confidence:
        lines.append("⚠️ **Estimates are low-confidence**")
    else:
        lines.append("✅ **No issues found**")
    lines.append("")

    lines.append("## Summary")
    lines.append("")
    lines.append("| Metric | Value |")
    lines.append("|--------|-------|")
    lines.append(f"| Plan Cost | {report.total_cost:,.2f} |")
    lines.append(f"| Estimated Rows | {report.estimated_rows:,.0f} |")
    lines.append(f"| Total Findings | {summary['total']} |")
    lines.append(f"| Critical | {summary['critical']} |")
    lines.append(f"| Warnings | {summary['warning']} |")
    lines.append(f"| Info | {summary['info']} |")
    lines.append("")

    lines.append("## Plan")
    lines.append("")
    lines.append("```")
    lines.append(report.plan_text)
    lines.append("```")
    lines.append("")

    if report.findings:
        lines.append("## Findings")
        lines.append("")

        for i, finding in enumerate(report.findings, 1):
            lines.append(f"### {i}. {_severity_icon(finding.severity)} {finding.title}")
            lines.append("")
            lines.append(f"**Kind:** `{finding.kind.value}`  ")
            if finding.node_path is not None:
                lines.append(f"**Location:** `{finding.node_path}`  ")
            if finding.impact_band.value != "UNKNOWN":
                lines.append(f"**Expected Impact:** {finding.impact_band.value}  ")
            if finding.low_confidence:
                lines.append("**Low confidence**  ")
            lines.append("")
            lines.append(finding.rationale)
            lines.append("")

            if finding.remediation:
                lines.append("**Remediation:**")
                lines.append("")
                lines.append("```sql")
                lines.append(finding.remediation)
                lines.append("```")
                lines.append("")

            if finding.assumptions:
                lines.append("**Assumptions:**")
                lines.append("")
                for assumption in finding.assumptions:
                    lines.append(f"- {assumption}")
                lines.append("")

            if finding.verification_steps:
                lines.append("**Verification:**")
                lines.append("")
                for step in finding.verification_steps:
                    lines.append(f"- [ ] {step}")
                lines.append("")

    if report.rule_runs:
        lines.append("<details>")
        lines.append("<summary>Rule Execution Details</summary>")
        lines.append("")
        lines.append("| Rule | Status | Runtime |")
        lines.append("|------|--------|---------|")
        for run in report.rule_runs:
            status_icon = {"pass": "✅", "skip": "⏭️"}.get(run.status.value, "❌")
            lines.append(
                f"| `{run.rule_id}` | {status_icon} {run.status.value} | "
                f"{run.runtime_ms:.1f}ms |"
            )
        lines.append("")
        lines.append("</details>")
        lines.append("")

    return "\n".join(lines)


_RENDERERS: dict[OutputFormat, Callable[["AdvisorReport"], str]] = {
    OutputFormat.TEXT: render_text,
    OutputFormat.JSON: render_json,
    OutputFormat.MARKDOWN: render_markdown,
}
