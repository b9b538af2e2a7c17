"""
Data models for advisor output.

Findings are the product of report rules. They are:
- Immutable (frozen=True): a finding never changes after creation
- Serializable: stable JSON for the --format json output
- Hashable: usable in sets for deduplication
- Observable: every rule run records PASS/SKIP/FAIL
"""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from planadvisor.planner.path import NodePath


class FindingKind(str, Enum):
    """What a finding is about."""

    NON_SARGABLE_PREDICATE = "NON_SARGABLE_PREDICATE"
    MISSING_INDEX = "MISSING_INDEX"
    UNINDEXED_FOREIGN_KEY = "UNINDEXED_FOREIGN_KEY"
    SUBOPTIMAL_JOIN_ORDER = "SUBOPTIMAL_JOIN_ORDER"
    SPILL_RISK = "SPILL_RISK"
    STATISTICS_STALE = "STATISTICS_STALE"
    NO_FEASIBLE_JOIN_STRATEGY = "NO_FEASIBLE_JOIN_STRATEGY"
    ENUMERATION_TRUNCATED = "ENUMERATION_TRUNCATED"
    SUBQUERY_REWRITE = "SUBQUERY_REWRITE"
    COVERING_INDEX = "COVERING_INDEX"
    OFFSET_PAGINATION = "OFFSET_PAGINATION"


class RuleRunStatus(str, Enum):
    """
    Status of a rule execution.

    Users need to tell "nothing found" from "did not run" from "crashed".
    """

    PASS = "pass"      # Rule executed normally
    SKIP = "skip"      # Disabled, or preconditions not met
    FAIL = "fail"      # Rule raised an error


class ImpactBand(str, Enum):
    """
    Expected improvement band.

    Cost estimates are relative, so recommendations never claim a specific
    speed-up; they name a band and the assumptions behind it.
    """

    LOW = "LOW"          # < 2x cheaper
    MEDIUM = "MEDIUM"    # 2-10x cheaper
    HIGH = "HIGH"        # > 10x cheaper
    UNKNOWN = "UNKNOWN"  # Not costed

    @classmethod
    def from_ratio(cls, before: float, after: float) -> "ImpactBand":
        """Band for a cost going from ``before`` to ``after``."""
        if after <= 0 or before <= 0:
            return cls.UNKNOWN
        ratio = before / after
        if ratio > 10:
            return cls.HIGH
        if ratio >= 2:
            return cls.MEDIUM
        return cls.LOW


class Severity(str, Enum):
    """
    Severity levels for findings.

    CRITICAL: the plan is likely to be pathological (unbounded nested loop,
        cartesian product on large inputs)
    WARNING: significant cost that should be addressed
    INFO: optimization opportunity
    """

    CRITICAL = "critical"
    WARNING = "warning"
    INFO = "info"

    def __lt__(self, other: object) -> bool:
        """Sort CRITICAL first."""
        if not isinstance(other, Severity):
            return NotImplemented
        return _SEVERITY_ORDER[self] < _SEVERITY_ORDER[other]


_SEVERITY_ORDER = {Severity.CRITICAL: 0, Severity.WARNING: 1, Severity.INFO: 2}


class Finding(BaseModel):
    """
    One advisory observation about a query's plan.

    Attributes:
        kind: What the finding is about.
        rule_id: Rule that produced it.
        severity: How serious it is.
        table: Affected table, when there is one.
        column: Affected column, when there is one.
        title: One-line summary.
        rationale: Why this matters for this query.
        remediation: Suggested fix: an index definition or a rewrite.
        metrics: Quantitative data (costs, rows, bytes).
        impact_band: Expected improvement band.
        assumptions: What the estimate assumes.
        verification_steps: How to confirm the recommendation.
        low_confidence: The estimate behind the finding rests on a fallback.
        node_path: Plan node the finding points at.

    Example:
        Finding(
            kind=FindingKind.MISSING_INDEX,
            rule_id="MISSING_INDEX",
            severity=Severity.WARNING,
            table="orders",
            column="status",
            title="Index on orders(status) would replace a sequential scan",
            rationale="status = 'pending' keeps 20% of 500,000 rows ...",
            remediation="CREATE INDEX ix_orders_status ON orders (status);",
            metrics={"current_cost": 10157.0, "hypothetical_cost": 6911.4},
        )
    """

    model_config = ConfigDict(frozen=True)

    kind: FindingKind = Field(..., description="What the finding is about")
    rule_id: str = Field(..., description="Rule that produced the finding")
    severity: Severity = Field(..., description="Severity level")
    table: str | None = Field(default=None, description="Affected table")
    column: str | None = Field(default=None, description="Affected column")
    title: str = Field(..., min_length=1, description="One-line summary")
    rationale: str = Field(..., min_length=1, description="Why this matters")
    remediation: str | None = Field(
        default=None,
        description="Index definition or predicate rewrite",
    )
    metrics: dict[str, int | float] = Field(
        default_factory=dict,
        description="Quantitative data about the finding",
    )
    impact_band: ImpactBand = Field(
        default=ImpactBand.UNKNOWN,
        description="Expected improvement band (LOW/MEDIUM/HIGH/UNKNOWN)",
    )
    assumptions: tuple[str, ...] = Field(
        default_factory=tuple,
        description="Assumptions underlying the recommendation",
    )
    verification_steps: tuple[str, ...] = Field(
        default_factory=tuple,
        description="Steps to verify the recommendation",
    )
    low_confidence: bool = Field(
        default=False,
        description="Estimate rests on a fallback or a truncated search",
    )
    node_path: NodePath | None = Field(
        default=None,
        description="Plan node the finding points at",
    )

    def sort_key(self) -> tuple[int, str, str, str, str]:
        return (
            _SEVERITY_ORDER[self.severity],
            self.kind.value,
            self.table or "",
            self.column or "",
            self.title,
        )

    def __lt__(self, other: "Finding") -> bool:
        """
        Deterministic order: severity (CRITICAL first), kind, table, column.
        """
        return self.sort_key() < other.sort_key()

    def __hash__(self) -> int:
        return hash((
            self.kind,
            self.rule_id,
            self.severity,
            self.table,
            self.column,
            self.title,
            tuple(sorted(self.metrics.items())),
        ))


class RuleRun(BaseModel):
    """Record of a single rule execution."""

    model_config = ConfigDict(frozen=True)

    rule_id: str = Field(..., description="Unique rule identifier")
    version: str = Field(..., description="Rule version")
    status: RuleRunStatus = Field(..., description="Execution status")
    runtime_ms: float = Field(default=0.0, description="Execution time in milliseconds")
    findings_count: int = Field(default=0, description="Number of findings generated")
    error_summary: str | None = Field(default=None, description="Error message if FAIL")
    skip_reason: str | None = Field(default=None, description="Reason if SKIP")


class ExecutionMetadata(BaseModel):
    """Metadata about one analysis."""

    model_config = ConfigDict(frozen=True)

    node_count: int = Field(default=0, description="Nodes in the chosen plan")
    rules_run: int = Field(default=0, description="Rules executed")
    rules_failed: int = Field(default=0, description="Rules that raised")
    rules_skipped: int = Field(default=0, description="Rules skipped")
    enumeration_steps: int = Field(default=0, description="Candidate joins costed")
    truncated: bool = Field(default=False, description="Enumeration stopped early")
    snapshot_version: int = Field(default=0, description="Statistics snapshot analyzed")
    config_hash: str | None = Field(default=None, description="Hash of the advisor configuration")
    analysis_duration_ms: float | None = Field(default=None, description="Wall time of the analysis")

    @property
    def success_rate(self) -> float:
        """Fraction of rules that completed successfully."""
        if self.rules_run == 0:
            return 1.0
        return (self.rules_run - self.rules_failed) / self.rules_run


class AdvisorReport(BaseModel):
    """
    Complete result of analyzing one query.

    Contains:
    - findings: every finding, sorted by severity, kind, table, column
    - rule_runs: status of each rule execution (PASS/SKIP/FAIL)
    - errors: serialized RuleErrors of rules that failed
    - plan_text: the chosen plan as EXPLAIN-like text
    - alternatives: candidate plans kept in explain mode
    """

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    query: str = Field(..., description="Query name")
    sql: str = Field(default="", description="Approximate SQL of the analyzed query")
    findings: tuple[Finding, ...] = Field(default_factory=tuple)
    rule_runs: tuple[RuleRun, ...] = Field(default_factory=tuple)
    errors: tuple[dict[str, Any], ...] = Field(default_factory=tuple)
    metadata: ExecutionMetadata = Field(default_factory=ExecutionMetadata)
    plan_text: str = Field(default="", description="Chosen plan, EXPLAIN style")
    total_cost: float = Field(default=0.0, description="Estimated cost of the chosen plan")
    estimated_rows: float = Field(default=0.0, description="Estimated result rows")
    alternatives: tuple[str, ...] = Field(
        default_factory=tuple,
        description="Candidate plans considered (explain mode only)",
    )
    plan: Any = Field(default=None, exclude=True, repr=False)

    @property
    def has_critical(self) -> bool:
        return any(f.severity == Severity.CRITICAL for f in self.findings)

    @property
    def has_warnings(self) -> bool:
        return any(f.severity == Severity.WARNING for f in self.findings)

    @property
    def has_errors(self) -> bool:
        return len(self.errors) > 0

    @property
    def low_confidence(self) -> bool:
        return any(f.low_confidence for f in self.findings)

    def findings_by_severity(self, severity: Severity) -> list[Finding]:
        return [f for f in self.findings if f.severity == severity]

    def findings_by_kind(self, kind: FindingKind) -> list[Finding]:
        return [f for f in self.findings if f.kind == kind]

    def rule_runs_by_status(self, status: RuleRunStatus) -> list[RuleRun]:
        return [r for r in self.rule_runs if r.status == status]

    def summary(self) -> dict[str, int | float | bool]:
        """Counts by severity plus rule outcomes."""
        return {
            "total": len(self.findings),
            "critical": len(self.findings_by_severity(Severity.CRITICAL)),
            "warning": len(self.findings_by_severity(Severity.WARNING)),
            "info": len(self.findings_by_severity(Severity.INFO)),
            "rules_passed": len(self.rule_runs_by_status(RuleRunStatus.PASS)),
            "rules_skipped": len(self.rule_runs_by_status(RuleRunStatus.SKIP)),
            "rules_failed": len(self.rule_runs_by_status(RuleRunStatus.FAIL)),
            "truncated": self.metadata.truncated,
            "success_rate": self.metadata.success_rate,
        }
