"""
JSON schema for the ``--format json`` report.

The schema is stable across minor versions; breaking changes only in
major versions. Renderers build these models from an AdvisorReport
instead of assembling dicts by hand.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field

# Schema version - increment on breaking changes
SCHEMA_VERSION = "1.0"


class FindingSchema(BaseModel):
    """Schema for a single finding."""

    model_config = ConfigDict(frozen=True)

    kind: str = Field(..., description="Finding kind, e.g. MISSING_INDEX")
    rule_id: str = Field(..., description="Rule that produced the finding")
    severity: str = Field(..., description="Severity level (critical/warning/info)")
    table: str | None = Field(None, description="Affected table")
    column: str | None = Field(None, description="Affected column")
    title: str = Field(..., description="One-line summary")
    rationale: str = Field(..., description="Why this matters")
    remediation: str | None = Field(None, description="Index definition or rewrite")
    impact_band: str = Field("UNKNOWN", description="Expected impact (LOW/MEDIUM/HIGH/UNKNOWN)")
    assumptions: list[str] = Field(default_factory=list, description="Assumptions behind the estimate")
    verification_steps: list[str] = Field(default_factory=list, description="How to confirm the fix")
    metrics: dict[str, float] = Field(default_factory=dict, description="Quantitative data")
    low_confidence: bool = Field(False, description="Estimate rests on a fallback")
    node_path: list[str] | None = Field(None, description="Plan node the finding points at")


class RuleRunSchema(BaseModel):
    """Schema for a rule execution record."""

    model_config = ConfigDict(frozen=True)

    rule_id: str = Field(..., description="Rule identifier")
    version: str = Field(..., description="Rule version")
    status: str = Field(..., description="Execution status (pass/skip/fail)")
    runtime_ms: float = Field(0.0, description="Execution time in milliseconds")
    findings_count: int = Field(0, description="Number of findings generated")
    error_summary: str | None = Field(None, description="Error message if failed")
    skip_reason: str | None = Field(None, description="Reason if skipped")


class PlanSchema(BaseModel):
    """Schema for the chosen plan."""

    model_config = ConfigDict(frozen=True)

    total_cost: float = Field(..., description="Estimated cost, including ORDER BY sort and LIMIT")
    estimated_rows: float = Field(..., description="Estimated result rows before LIMIT")
    text: str = Field(..., description="EXPLAIN-style plan tree")
    alternatives: list[str] = Field(default_factory=list, description="Candidates (explain mode)")


class MetadataSchema(BaseModel):
    """Schema for execution metadata."""

    model_config = ConfigDict(frozen=True)

    node_count: int = Field(0, description="Nodes in the chosen plan")
    rules_run: int = Field(0, description="Rules executed")
    rules_failed: int = Field(0, description="Rules that failed")
    rules_skipped: int = Field(0, description="Rules that were skipped")
    enumeration_steps: int = Field(0, description="Candidate joins costed")
    truncated: bool = Field(False, description="Plan search stopped early")
    snapshot_version: int = Field(0, description="Statistics snapshot analyzed")
    config_hash: str | None = Field(None, description="Hash of the configuration")
    analysis_duration_ms: float | None = Field(None, description="Analysis duration")


class SummarySchema(BaseModel):
    """Schema for the report summary."""

    model_config = ConfigDict(frozen=True)

    total: int = Field(0, description="Total findings count")
    critical: int = Field(0, description="Critical findings count")
    warning: int = Field(0, description="Warning findings count")
    info: int = Field(0, description="Info findings count")
    rules_passed: int = Field(0, description="Rules that passed")
    rules_skipped: int = Field(0, description="Rules that were skipped")
    rules_failed: int = Field(0, description="Rules that failed")
    low_confidence: bool = Field(False, description="Any finding rests on a fallback")
    success_rate: float = Field(1.0, description="Rule success rate")


class AdvisorReportSchema(BaseModel):
    """
    Top-level schema for one query's report.

    This schema is stable across minor versions.
    Breaking changes require major version bump.
    """

    model_config = ConfigDict(frozen=True)

    version: str = Field(SCHEMA_VERSION, description="Schema version")
    query: str = Field(..., description="Query name")
    sql: str = Field("", description="Approximate SQL of the query")
    summary: SummarySchema = Field(..., description="Report summary")
    plan: PlanSchema = Field(..., description="Chosen plan")
    findings: list[FindingSchema] = Field(default_factory=list, description="All findings")
    rule_runs: list[RuleRunSchema] = Field(default_factory=list, description="Rule execution records")
    errors: list[dict[str, Any]] = Field(default_factory=list, description="Rule errors")
    metadata: MetadataSchema = Field(..., description="Execution metadata")


def get_json_schema() -> dict[str, Any]:
    """JSON Schema of the report, for documentation and validation."""
    return AdvisorReportSchema.model_json_schema()
