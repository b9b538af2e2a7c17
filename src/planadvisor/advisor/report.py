"""
Report builder: runs the report rules over one AdvisoryContext.

Every rule gets a RuleRun record:
- SKIP when the configuration disables it or gives it invalid thresholds
- PASS when it returns (with or without findings)
- FAIL when it raises; the error is logged and listed in the report,
  or re-raised as RuleError when ``fail_fast`` is set

Findings are deduplicated and sorted by severity, kind, table, column so
the same query and statistics always produce the same report.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Sequence

from pydantic import ValidationError

from planadvisor.advisor.context import AdvisoryContext
from planadvisor.advisor.models import Finding, RuleRun, RuleRunStatus
from planadvisor.advisor.observability import AdvisorMetrics
from planadvisor.advisor.rules.base import Rule
from planadvisor.config import AdvisorConfig
from planadvisor.exceptions import RuleError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RuleOutcome:
    """Findings, rule runs and recorded errors of one report."""

    findings: tuple[Finding, ...]
    rule_runs: tuple[RuleRun, ...]
    errors: tuple[dict[str, Any], ...]

    @property
    def failed(self) -> int:
        return sum(1 for r in self.rule_runs if r.status is RuleRunStatus.FAIL)

    @property
    def skipped(self) -> int:
        return sum(1 for r in self.rule_runs if r.status is RuleRunStatus.SKIP)


class ReportBuilder:
    """
    Runs rules and collects their findings.

    Args:
        rules: Rule instances, run in the given order.
        config: Advisor configuration (rule enablement, fail_fast).
        metrics: Optional metrics sink for per-rule timings.
        max_findings_per_rule: Cap on findings kept from one rule.
    """

    def __init__(
        self,
        rules: Sequence[Rule],
        config: AdvisorConfig,
        metrics: AdvisorMetrics | None = None,
        max_findings_per_rule: int = 100,
    ) -> None:
        self.rules = list(rules)
        self.config = config
        self.metrics = metrics
        self.max_findings_per_rule = max_findings_per_rule

    def run(self, ctx: AdvisoryContext) -> RuleOutcome:
        findings: list[Finding] = []
        rule_runs: list[RuleRun] = []
        errors: list[dict[str, Any]] = []

        for rule in self.rules:
            if not self.config.is_rule_enabled(rule.rule_id) or not rule.settings.enabled:
                rule_runs.append(RuleRun(
                    rule_id=rule.rule_id,
                    version=rule.version,
                    status=RuleRunStatus.SKIP,
                    skip_reason="disabled by configuration",
                ))
                logger.debug("Rule %s skipped: disabled", rule.rule_id)
                continue

            invalid = self._settings_error(rule)
            if invalid is not None:
                rule_runs.append(RuleRun(
                    rule_id=rule.rule_id,
                    version=rule.version,
                    status=RuleRunStatus.SKIP,
                    skip_reason=f"invalid settings: {invalid}",
                ))
                logger.warning("Rule %s skipped: invalid settings: %s", rule.rule_id, invalid)
                continue

            rule_start = time.perf_counter()
            try:
                rule_findings = rule.analyze(ctx)[:self.max_findings_per_rule]
            except Exception as e:
                runtime_ms = (time.perf_counter() - rule_start) * 1000
                error = RuleError(rule.rule_id, rule.version, e)
                if self.config.fail_fast:
                    raise error from e

                rule_runs.append(RuleRun(
                    rule_id=rule.rule_id,
                    version=rule.version,
                    status=RuleRunStatus.FAIL,
                    runtime_ms=runtime_ms,
                    error_summary=str(e),
                ))
                errors.append(error.to_dict())
                logger.warning("Rule %s failed: %s", rule.rule_id, e)
                self._record(rule.rule_id, RuleRunStatus.FAIL, runtime_ms, 0)
                continue

            runtime_ms = (time.perf_counter() - rule_start) * 1000
            findings.extend(rule_findings)
            rule_runs.append(RuleRun(
                rule_id=rule.rule_id,
                version=rule.version,
                status=RuleRunStatus.PASS,
                runtime_ms=runtime_ms,
                findings_count=len(rule_findings),
            ))
            self._record(rule.rule_id, RuleRunStatus.PASS, runtime_ms, len(rule_findings))

        return RuleOutcome(
            findings=tuple(sorted(dict.fromkeys(findings))),
            rule_runs=tuple(rule_runs),
            errors=tuple(errors),
        )

    def _settings_error(self, rule: Rule) -> str | None:
        """Why the configured thresholds do not fit the rule's settings, or None."""
        rule_config = self.config.rules.get(rule.rule_id)
        if rule_config is None or not rule_config.thresholds:
            return None
        try:
            rule.settings_schema(**{**rule.settings.model_dump(), **rule_config.thresholds})
        except ValidationError as e:
            return "; ".join(
                f"{'.'.join(str(part) for part in error['loc'])}: {error['msg']}"
                for error in e.errors()
            )
        return None

    def _record(self, rule_id: str, status: RuleRunStatus, runtime_ms: float, count: int) -> None:
        if self.metrics is not None:
            self.metrics.record_rule_execution(rule_id, status.value, runtime_ms, count)
