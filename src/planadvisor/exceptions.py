"""
Package-level exception hierarchy for planadvisor.

All exceptions inherit from PlanAdvisorError, enabling:
- Catching all advisor errors with a single except clause
- Rich context fields for debugging (table, column, rule_id, config_key, etc.)
- Structured serialization via to_dict() for JSON error output

Hierarchy:
    PlanAdvisorError
    ├── StatisticsError                – Problems with the statistics store
    │   ├── UnknownTableError          – Query references a table with no statistics
    │   └── UnknownColumnError         – Query references a column with no statistics
    ├── PlanningError                  – Errors while building candidate plans
    │   └── NoFeasibleJoinStrategyError
    ├── AdvisorError                   – Errors during report orchestration
    │   ├── RuleError                  – A specific rule failed during execution
    │   └── ConfigurationError         – Invalid advisor configuration
    └── WorkloadError                  – Failed to load a workload file
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from planadvisor.planner.path import NodePath


class PlanAdvisorError(Exception):
    """
    Base exception for all planadvisor errors.

    Attributes:
        message: Human-readable error description.
    """

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary for JSON error responses."""
        return {
            "error_type": type(self).__name__,
            "message": self.message,
        }


# ── Statistics Errors ────────────────────────────────────────────────────


class StatisticsError(PlanAdvisorError):
    """Errors raised by the statistics store or a statistics source."""
    pass


class UnknownTableError(StatisticsError):
    """
    A query referenced a table the statistics store knows nothing about.

    Fatal to the analysis of that query.

    Attributes:
        table: The table name that could not be resolved.
    """

    def __init__(self, table: str) -> None:
        self.table = table
        super().__init__(f"Unknown table '{table}': no statistics available")

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        result["table"] = self.table
        return result


class UnknownColumnError(StatisticsError):
    """
    A query referenced a column missing from its table's statistics.

    Attributes:
        table: Table the column was looked up in.
        column: The column name that could not be resolved.
    """

    def __init__(self, table: str, column: str) -> None:
        self.table = table
        self.column = column
        super().__init__(f"Unknown column '{table}.{column}': no statistics available")

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        result["table"] = self.table
        result["column"] = self.column
        return result


# ── Planning Errors ──────────────────────────────────────────────────────


class PlanningError(PlanAdvisorError):
    """Errors while enumerating candidate plans."""
    pass


class NoFeasibleJoinStrategyError(PlanningError):
    """
    No enabled join strategy can implement a join edge.

    Normally downgraded to a finding with a low-confidence nested loop
    fallback; raised only when the enumerator runs in strict mode.

    Attributes:
        left: Relations on the left side of the edge.
        right: Relations on the right side of the edge.
        reason: Why every strategy was rejected.
    """

    def __init__(self, left: str, right: str, reason: str) -> None:
        self.left = left
        self.right = right
        self.reason = reason
        super().__init__(f"No feasible join strategy for {left} ⋈ {right}: {reason}")

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        result["left"] = self.left
        result["right"] = self.right
        result["reason"] = self.reason
        return result


# ── Advisor Errors ───────────────────────────────────────────────────────


class AdvisorError(PlanAdvisorError):
    """Errors during report orchestration."""
    pass


class RuleError(AdvisorError):
    """
    Error during rule execution.

    Captures which rule failed and optionally which plan node it was
    looking at.

    Attributes:
        rule_id: The ID of the rule that failed.
        rule_version: Version of the rule.
        node_path: Path to the plan node being processed (if known).
        original_error: The underlying exception.
    """

    def __init__(
        self,
        rule_id: str,
        rule_version: str,
        original_error: Exception,
        node_path: "NodePath | None" = None,
    ) -> None:
        self.rule_id = rule_id
        self.rule_version = rule_version
        self.node_path = node_path
        self.original_error = original_error

        context = f"Rule '{rule_id}' v{rule_version}"
        if node_path:
            context += f" at {node_path}"

        message = (
            f"{context} failed: "
            f"{original_error.__class__.__name__}: {original_error}"
        )
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        """Serialize for JSON output / logging."""
        return {
            "error_type": type(self).__name__,
            "message": self.message,
            "rule_id": self.rule_id,
            "rule_version": self.rule_version,
            "node_path": list(self.node_path.segments) if self.node_path else None,
            "original_error_type": self.original_error.__class__.__name__,
            "original_error_message": str(self.original_error),
        }


class ConfigurationError(AdvisorError):
    """
    Error in advisor configuration.

    Attributes:
        config_key: The configuration key that caused the error (if known).
    """

    def __init__(self, message: str, config_key: str | None = None) -> None:
        self.config_key = config_key
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        result["config_key"] = self.config_key
        return result


# ── Workload Errors ──────────────────────────────────────────────────────


class WorkloadError(PlanAdvisorError):
    """
    Failed to load a workload file.

    Raised when the file is missing, is not valid YAML/JSON, or does not
    validate against the table and query models.

    Attributes:
        source: Description of the input source (file path, "stdin", etc.).
    """

    def __init__(self, message: str, source: str | None = None) -> None:
        self.source = source
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        result["source"] = self.source
        return result
