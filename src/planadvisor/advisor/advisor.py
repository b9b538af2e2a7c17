"""
QueryAdvisor: plans a query against a statistics snapshot and reviews the plan.

One analysis runs five phases, each traced as a span:
1. snapshot: take the store's current immutable snapshot
2. validate: every relation and column reference must exist
3. classify: intrinsically non-SARGable conjuncts per relation
4. enumerate: choose a plan (strict planning raises on infeasible joins)
5. report: run the report rules over an AdvisoryContext

Design principles:
- Pure over the snapshot: a refresh during an analysis never changes it
- Observable failure: PASS/SKIP/FAIL for every rule, errors listed
- Fatal means fatal: unknown tables and columns propagate to the caller
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Iterator, Sequence

from planadvisor.advisor.context import AdvisoryContext
from planadvisor.advisor.models import AdvisorReport, ExecutionMetadata
from planadvisor.advisor.observability import AdvisorMetrics, Tracer
from planadvisor.advisor.registry import get_registry
from planadvisor.advisor.report import ReportBuilder
from planadvisor.advisor.rules import Rule
from planadvisor.config import AdvisorConfig, get_config
from planadvisor.exceptions import PlanAdvisorError
from planadvisor.planner.classifier import NonSargable, PredicateClassifier
from planadvisor.planner.enumerator import EnumerationResult, PlanEnumerator
from planadvisor.planner.plan import describe, explain, node_count
from planadvisor.query.predicates import ColumnRef, Existence, conjuncts
from planadvisor.query.spec import QuerySpec
from planadvisor.stats.store import StatisticsSnapshot, StatisticsStore

logger = logging.getLogger(__name__)

DEFAULT_MAX_FINDINGS_PER_RULE = 100


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def column_references(query: QuerySpec) -> Iterator[ColumnRef]:
    """Every column reference in the query except ``*``."""
    refs: list[ColumnRef] = list(query.select)
    if query.where is not None:
        refs.extend(query.where.columns())
    for edge in query.joins:
        if edge.condition is not None:
            refs.extend(edge.condition.columns())
    refs.extend(item.column for item in query.order_by)
    for ref in refs:
        if not ref.is_star:
            yield ref


def validate_query(query: QuerySpec, snapshot: StatisticsSnapshot) -> None:
    """
    Check every table and column the query names against the snapshot.

    Raises:
        UnknownTableError: A relation or subquery reads a table with no statistics
        UnknownColumnError: A referenced column is not in its table
    """
    for rel in query.relations:
        snapshot.get_table(rel.table)
    for ref in column_references(query):
        table = query.relation(query.relation_of(ref)).table
        snapshot.get_column_stats(table, ref.column)
    for item in conjuncts(query.where):
        if isinstance(item, Existence):
            sub = snapshot.get_table(item.relation)
            if item.subquery_column is not None:
                sub.column(item.subquery_column)


@dataclass
class BatchResult:
    """Reports of ``analyze_many``, with the queries that failed fatally."""

    reports: list[AdvisorReport] = field(default_factory=list)
    errors: dict[str, PlanAdvisorError] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.errors


class QueryAdvisor:
    """
    Plans queries and reports on the plans.

    Args:
        store: Statistics store to take snapshots from.
        config: Advisor configuration (if None, uses get_config()).
        rules: Rule instances to run (if None, every registered rule).
        include_rules: Only run these rule IDs.
        exclude_rules: Skip these rule IDs.
        metrics: Metrics sink (default: a private AdvisorMetrics).
        max_findings_per_rule: Limit findings per rule (default: 100).
        clock: Reference time for staleness checks.

    Example:
        advisor = QueryAdvisor(store)
        report = advisor.analyze(query)
        for finding in report.findings:
            print(finding.severity, finding.title)
    """

    def __init__(
        self,
        store: StatisticsStore,
        config: AdvisorConfig | None = None,
        *,
        rules: Sequence[Rule] | None = None,
        include_rules: set[str] | None = None,
        exclude_rules: set[str] | None = None,
        metrics: AdvisorMetrics | None = None,
        max_findings_per_rule: int = DEFAULT_MAX_FINDINGS_PER_RULE,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.store = store
        self.config = config if config is not None else get_config()

        if rules is not None:
            self.rules = list(rules)
        else:
            rule_classes = get_registry().filter(include=include_rules, exclude=exclude_rules)
            self.rules = [cls() for cls in rule_classes]

        self.metrics = metrics if metrics is not None else AdvisorMetrics()
        self.max_findings_per_rule = max_findings_per_rule
        self._clock = clock or _utcnow

        logger.debug(
            "QueryAdvisor initialized: %d rules, strict=%s, fail_fast=%s",
            len(self.rules),
            self.config.strict_planning,
            self.config.fail_fast,
        )

    def analyze(
        self,
        query: QuerySpec,
        *,
        explain: bool = False,
        deadline: float | None = None,
        cancel: threading.Event | None = None,
        snapshot: StatisticsSnapshot | None = None,
    ) -> AdvisorReport:
        """
        Plan ``query`` and review the plan.

        Args:
            query: The query to analyze.
            explain: Keep candidate plans in the report.
            deadline: ``time.monotonic()`` value bounding plan enumeration.
            cancel: Event that stops plan enumeration early.
            snapshot: Snapshot to analyze against (default: the store's current one).

        Raises:
            UnknownTableError, UnknownColumnError: The query names something
                the statistics do not know.
            NoFeasibleJoinStrategyError: In strict planning mode only.
            RuleError: A rule failed and ``fail_fast`` is set.
        """
        start_time = time.perf_counter()
        tracer = Tracer(enabled=self.config.tracing_enabled)
        tracer.start_span("analyze", query=query.name)
        try:
            report = self._analyze(query, tracer, explain, deadline, cancel, snapshot, start_time)
        except PlanAdvisorError as e:
            self.metrics.record_failure(type(e).__name__)
            raise
        finally:
            tracer.end_span()

        trace = tracer.get_trace()
        if trace is not None:
            logger.debug("Trace for %s: %s", query.name, trace)
        return report

    def _analyze(
        self,
        query: QuerySpec,
        tracer: Tracer,
        explain_mode: bool,
        deadline: float | None,
        cancel: threading.Event | None,
        snapshot: StatisticsSnapshot | None,
        start_time: float,
    ) -> AdvisorReport:
        tracer.start_span("snapshot")
        snap = snapshot if snapshot is not None else self.store.snapshot()
        tracer.end_span()

        tracer.start_span("validate")
        validate_query(query, snap)
        tracer.end_span()

        tracer.start_span("classify")
        non_sargable = self._classify(query, snap)
        tracer.end_span()

        tracer.start_span("enumerate", relations=len(query.relations))
        enumerator = PlanEnumerator(snap, self.config.cost, strict=self.config.strict_planning)
        result = enumerator.enumerate(query, deadline=deadline, cancel=cancel, explain=explain_mode)
        tracer.end_span()
        if result.truncated:
            logger.warning("Plan search for %s truncated: %s", query.name, result.truncation_reason)
        for failure in result.failures:
            logger.warning(
                "No feasible join strategy for %s x %s in %s: %s",
                failure.left_label, failure.right_label, query.name, failure.reason,
            )

        tracer.start_span("report", rule_count=len(self.rules))
        ctx = AdvisoryContext(
            query=query,
            snapshot=snap,
            result=result,
            config=self.config,
            now=self._clock(),
            non_sargable=non_sargable,
        )
        builder = ReportBuilder(
            self.rules, self.config, self.metrics, max_findings_per_rule=self.max_findings_per_rule
        )
        outcome = builder.run(ctx)
        tracer.end_span()

        duration_ms = (time.perf_counter() - start_time) * 1000
        metadata = ExecutionMetadata(
            node_count=node_count(result.root),
            rules_run=len(outcome.rule_runs) - outcome.skipped,
            rules_failed=outcome.failed,
            rules_skipped=outcome.skipped,
            enumeration_steps=result.steps,
            truncated=result.truncated,
            snapshot_version=snap.version,
            config_hash=self.config.config_hash(),
            analysis_duration_ms=duration_ms,
        )
        self.metrics.record_analysis(
            duration_ms=duration_ms,
            findings_count=len(outcome.findings),
            errors_count=outcome.failed,
            truncated=result.truncated,
        )
        return AdvisorReport(
            query=query.name,
            sql=query.to_sql(),
            findings=outcome.findings,
            rule_runs=outcome.rule_runs,
            errors=outcome.errors,
            metadata=metadata,
            plan_text=explain(result.root),
            total_cost=result.total_cost,
            estimated_rows=result.root.rows,
            alternatives=self._alternatives(result) if explain_mode else (),
            plan=result,
        )

    def _classify(
        self, query: QuerySpec, snapshot: StatisticsSnapshot
    ) -> dict[str, tuple[NonSargable, ...]]:
        found: dict[str, tuple[NonSargable, ...]] = {}
        for key in query.relation_keys:
            table = snapshot.get_table(query.relation(key).table)
            classifier = PredicateClassifier(table, key)
            found[key] = tuple(classifier.non_sargable(query.local_predicates(key)))
            if found[key]:
                logger.debug("%s: %d non-SARGable predicates", key, len(found[key]))
        return found

    @staticmethod
    def _alternatives(result: EnumerationResult) -> tuple[str, ...]:
        lines = []
        for key, candidates in result.scan_candidates.items():
            for node in candidates:
                lines.append(f"{key}: {describe(node)}  (cost={node.cost:,.2f} rows={node.rows:,.0f})")
        for step, candidates in enumerate(result.join_candidates, start=1):
            for node in candidates:
                lines.append(f"join {step}: {describe(node)}  (cost={node.cost:,.2f} rows={node.rows:,.0f})")
        return tuple(lines)

    def analyze_many(
        self,
        queries: Sequence[QuerySpec],
        *,
        deadline: float | None = None,
        cancel: threading.Event | None = None,
    ) -> BatchResult:
        """
        Analyze several queries in parallel against one shared snapshot.

        Fatal errors of one query (unknown table, strict planning failure)
        are collected per query name; the other queries still complete.
        """
        snapshot = self.store.snapshot()
        batch = BatchResult()
        if not queries:
            return batch

        def run(query: QuerySpec) -> AdvisorReport:
            return self.analyze(query, deadline=deadline, cancel=cancel, snapshot=snapshot)

        with ThreadPoolExecutor(max_workers=self.config.max_workers) as executor:
            futures = [(q, executor.submit(run, q)) for q in queries]
            for query, future in futures:
                try:
                    batch.reports.append(future.result())
                except PlanAdvisorError as e:
                    logger.warning("Analysis of %s failed: %s", query.name, e)
                    batch.errors[query.name] = e
        return batch

    async def analyze_async(
        self,
        query: QuerySpec,
        *,
        explain: bool = False,
    ) -> AdvisorReport:
        """
        Async version of analyze() for use in async applications.

        Runs the analysis in the default executor to avoid blocking the event loop.
        """
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(
            None,
            lambda: self.analyze(query, explain=explain),
        )
