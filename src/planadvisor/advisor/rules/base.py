"""
Base class for report rules.

Every rule inherits from Rule and implements ``analyze(ctx)``. A rule
looks at one concern, reads the AdvisoryContext, and returns findings;
it never modifies the context, the plan or the statistics.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from planadvisor.advisor.context import AdvisoryContext
from planadvisor.advisor.models import Finding, FindingKind, Severity


class RuleSettings(BaseModel):
    """
    Base configuration for all rules.

    Rules declare their thresholds by subclassing this. Values given in
    AdvisorConfig.rules[rule_id].thresholds take precedence.

    Example:
        class OffsetPaginationSettings(RuleSettings):
            min_offset: int = 1000
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    enabled: bool = True


class ImprovementSettings(RuleSettings):
    """Settings of rules that confirm a recommendation with a what-if re-plan."""

    min_improvement: float | None = Field(
        default=None,
        ge=0.0,
        lt=1.0,
        description="Fractional cost saving required; unset uses default_min_improvement",
    )


class LargeTableSettings(RuleSettings):
    """Settings of rules that only look at large tables."""

    large_table_rows: int | None = Field(
        default=None,
        ge=0,
        description="Row count from which a table is large; unset uses the table override",
    )


class Rule(ABC):
    """
    Abstract base class for report rules.

    Rules should be:
    - Deterministic: same context, same findings
    - Read-only: what-if questions go through ``ctx.replan``
    - Focused: one rule, one finding kind

    Attributes:
        rule_id: Unique identifier, UPPER_SNAKE_CASE
        version: Semver string, bump when detection logic changes
        kind: Kind of the findings this rule emits
        severity: Default severity for its findings
        description: One-line description for ``planadvisor rules``
        settings_schema: Pydantic model of the rule's thresholds
    """

    rule_id: str
    version: str = "1.0.0"
    kind: FindingKind
    severity: Severity
    description: str = ""
    settings_schema: type[RuleSettings] = RuleSettings

    def __init__(self, settings: RuleSettings | dict[str, Any] | None = None) -> None:
        if settings is None:
            self.settings = self.settings_schema()
        elif isinstance(settings, dict):
            self.settings = self.settings_schema(**settings)
        else:
            self.settings = settings

    @abstractmethod
    def analyze(self, ctx: AdvisoryContext) -> list[Finding]:
        """Return findings for this query, or an empty list."""

    def threshold(self, ctx: AdvisoryContext, name: str) -> Any:
        """
        A threshold value: rule config first, then the advisor's global
        ``default_<name>``, then this rule's own setting.
        """
        return ctx.threshold(self.rule_id, name, getattr(self.settings, name, None))

    def applies_to(self, ctx: AdvisoryContext, table: str | None) -> bool:
        if table is None:
            return True
        return not ctx.config.should_skip_rule_for_table(self.rule_id, table)

    def finding(self, **fields: Any) -> Finding:
        """Build a Finding with this rule's id, kind and default severity."""
        fields.setdefault("severity", self.severity)
        return Finding(kind=self.kind, rule_id=self.rule_id, **fields)

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(rule_id={self.rule_id!r}, version={self.version!r})"
