"""Report rules, the report builder and the QueryAdvisor orchestrator."""

from planadvisor.advisor.advisor import BatchResult, QueryAdvisor, validate_query
from planadvisor.advisor.context import AdvisoryContext
from planadvisor.advisor.models import (
    AdvisorReport,
    ExecutionMetadata,
    Finding,
    FindingKind,
    ImpactBand,
    RuleRun,
    RuleRunStatus,
    Severity,
)
from planadvisor.advisor.observability import (
    AdvisorMetrics,
    InMemoryMetricsExporter,
    LoggingMetricsExporter,
    Tracer,
)
from planadvisor.advisor.registry import RuleRegistry, get_registry, register_rule
from planadvisor.advisor.report import ReportBuilder, RuleOutcome
from planadvisor.advisor.rules import Rule, RuleSettings

__all__ = [
    "AdvisorMetrics",
    "AdvisorReport",
    "AdvisoryContext",
    "BatchResult",
    "ExecutionMetadata",
    "Finding",
    "FindingKind",
    "ImpactBand",
    "InMemoryMetricsExporter",
    "LoggingMetricsExporter",
    "QueryAdvisor",
    "ReportBuilder",
    "Rule",
    "RuleOutcome",
    "RuleRegistry",
    "RuleRun",
    "RuleRunStatus",
    "RuleSettings",
    "Severity",
    "Tracer",
    "get_registry",
    "register_rule",
    "validate_query",
]
