"""PlanAdvisor - cost-based query plan advisor for PostgreSQL-style databases."""

__version__ = "0.3.0"
__license__ = "MIT"

# Exception hierarchy (import first so other modules can use it)
from planadvisor.exceptions import (
    AdvisorError,
    ConfigurationError,
    NoFeasibleJoinStrategyError,
    PlanAdvisorError,
    PlanningError,
    RuleError,
    StatisticsError,
    UnknownColumnError,
    UnknownTableError,
    WorkloadError,
)

# Public API exports
from planadvisor.advisor import (
    AdvisorMetrics,
    AdvisorReport,
    Finding,
    FindingKind,
    ImpactBand,
    QueryAdvisor,
    RuleRun,
    RuleRunStatus,
    Severity,
)
from planadvisor.config import AdvisorConfig, CostSettings, get_config, reset_config
from planadvisor.planner import CostEstimator, PlanEnumerator, PredicateClassifier
from planadvisor.query import QuerySpec
from planadvisor.query.loader import Workload, load_workload
from planadvisor.stats import Column, Index, StatisticsStore, Table

__all__ = [
    "__version__",
    # Exceptions
    "AdvisorError",
    "ConfigurationError",
    "NoFeasibleJoinStrategyError",
    "PlanAdvisorError",
    "PlanningError",
    "RuleError",
    "StatisticsError",
    "UnknownColumnError",
    "UnknownTableError",
    "WorkloadError",
    # Advisor
    "AdvisorMetrics",
    "AdvisorReport",
    "Finding",
    "FindingKind",
    "ImpactBand",
    "QueryAdvisor",
    "RuleRun",
    "RuleRunStatus",
    "Severity",
    # Config
    "AdvisorConfig",
    "CostSettings",
    "get_config",
    "reset_config",
    # Planning
    "CostEstimator",
    "PlanEnumerator",
    "PredicateClassifier",
    # Inputs
    "Column",
    "Index",
    "QuerySpec",
    "StatisticsStore",
    "Table",
    "Workload",
    "load_workload",
]
