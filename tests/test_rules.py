"""Tests for the report rules, each run alone through QueryAdvisor."""

import threading
from datetime import timedelta

import pytest

from planadvisor.advisor import QueryAdvisor
from planadvisor.advisor.models import FindingKind, ImpactBand, RuleRunStatus, Severity
from planadvisor.config import AdvisorConfig, CostSettings, RuleConfig, TableOverrides
from planadvisor.planner.path import NodePath
from planadvisor.query.spec import QuerySpec
from planadvisor.stats.models import Index
from planadvisor.stats.store import StatisticsStore

from conftest import NOW, make_customers, make_orders, make_regions


def query(**fields) -> QuerySpec:
    fields.setdefault("name", "q")
    return QuerySpec.model_validate(fields)


def run(store, q, rule_id, config=None, **kwargs):
    advisor = QueryAdvisor(
        store, config or AdvisorConfig(), include_rules={rule_id}, clock=lambda: NOW
    )
    report = advisor.analyze(q, **kwargs)
    assert [r.rule_id for r in report.rule_runs] == [rule_id]
    assert report.rule_runs[0].status is RuleRunStatus.PASS
    return report.findings


PENDING = {"kind": "comparison", "column": "status", "operator": "=", "value": "pending"}
ORDERS_CUSTOMERS = [{"left": "o", "right": "c", "on": [["o.customer_id", "c.id"]]}]


def store_with(*tables):
    return StatisticsStore(list(tables), clock=lambda: NOW)


class TestMissingIndex:
    """What-if checked index proposals."""

    def test_proposes_index_for_filtered_seq_scan(self, store):
        """A selective filter on an unindexed column gets an index proposal."""
        findings = run(store, query(relations=["orders"], where=PENDING), "MISSING_INDEX")

        assert len(findings) == 1
        finding = findings[0]
        assert finding.kind is FindingKind.MISSING_INDEX
        assert finding.severity is Severity.WARNING
        assert finding.table == "orders"
        assert finding.column == "status"
        assert finding.title.startswith("Index on orders(status) would cut plan cost by")
        assert finding.remediation == "CREATE INDEX ix_orders_status ON orders (status);"
        assert finding.impact_band is ImpactBand.MEDIUM
        assert finding.metrics["current_cost"] == pytest.approx(10157.0)
        assert finding.metrics["improvement"] == pytest.approx(0.58, abs=0.01)
        assert str(finding.node_path) == "Plan"

    def test_small_tables_are_skipped(self, store):
        """Tables under large_table_rows get no proposal."""
        config = AdvisorConfig(default_large_table_rows=1_000_000)
        assert run(store, query(relations=["orders"], where=PENDING), "MISSING_INDEX", config) == ()

    def test_table_override_disables_index_advice(self, store):
        """index_disabled silences index proposals for that table."""
        config = AdvisorConfig(table_overrides={"orders": TableOverrides(index_disabled=True)})
        assert run(store, query(relations=["orders"], where=PENDING), "MISSING_INDEX", config) == ()

    def test_existing_index_is_not_proposed_again(self):
        """An index leading with the proposed key already exists."""
        orders = make_orders().with_index(Index(name="ix_status", columns=("status",)))
        store = store_with(orders)
        assert run(store, query(relations=["orders"], where=PENDING), "MISSING_INDEX") == ()

    def test_improvement_margin(self, store):
        """A proposal that does not beat the margin is dropped."""
        config = AdvisorConfig(rules={"MISSING_INDEX": RuleConfig(thresholds={"min_improvement": 0.9})})
        assert run(store, query(relations=["orders"], where=PENDING), "MISSING_INDEX", config) == ()


def orders_with_customer_index(correlation: float):
    orders = make_orders()
    columns = tuple(
        c.model_copy(update={"correlation": correlation}) if c.name == "customer_id" else c
        for c in orders.columns
    )
    index = Index(name="ix_orders_customer_id", columns=("customer_id",))
    return orders.model_copy(update={"columns": columns, "indexes": orders.indexes + (index,)})


class TestCoveringIndex:
    """INCLUDE suggestions for index scans."""

    def test_include_makes_scan_index_only(self):
        """Selecting one extra column suggests it as INCLUDE."""
        store = store_with(orders_with_customer_index(1.0))
        q = query(
            relations=["orders"],
            select=["customer_id", "status"],
            where={"kind": "comparison", "column": "customer_id", "operator": "=", "value": 42},
        )
        findings = run(store, q, "COVERING_INDEX")

        assert len(findings) == 1
        finding = findings[0]
        assert finding.title == "INCLUDE (status) would make ix_orders_customer_id covering"
        assert finding.severity is Severity.INFO
        assert "INCLUDE (status)" in finding.remediation
        assert "DROP INDEX ix_orders_customer_id;" in finding.remediation
        assert finding.metrics["hypothetical_cost"] < finding.metrics["current_cost"]

    def test_select_star_is_not_covered(self):
        """Every column is needed, so no INCLUDE list would do."""
        store = store_with(orders_with_customer_index(1.0))
        q = query(
            relations=["orders"],
            where={"kind": "comparison", "column": "customer_id", "operator": "=", "value": 42},
        )
        assert run(store, q, "COVERING_INDEX") == ()


class TestUnindexedForeignKey:
    """Join keys that reference another table."""

    def test_reports_unindexed_reference(self, store):
        """orders.customer_id references customers.id with no index."""
        q = query(relations=["orders o", "customers c"], joins=ORDERS_CUSTOMERS)
        findings = run(store, q, "UNINDEXED_FOREIGN_KEY")

        assert len(findings) == 1
        finding = findings[0]
        assert finding.title == "Foreign key orders.customer_id has no index"
        assert finding.remediation == "CREATE INDEX ix_orders_customer_id ON orders (customer_id);"
        assert finding.severity is Severity.WARNING
        assert finding.impact_band is ImpactBand.MEDIUM
        assert str(finding.node_path) == "Plan"

    def test_indexed_reference_is_quiet(self):
        """An index leading with the column satisfies the rule."""
        store = store_with(orders_with_customer_index(0.0), make_customers(), make_regions())
        q = query(relations=["orders o", "customers c"], joins=ORDERS_CUSTOMERS)
        assert run(store, q, "UNINDEXED_FOREIGN_KEY") == ()

    def test_small_child_table_is_info(self, store):
        """Below large_table_rows the finding is informational."""
        config = AdvisorConfig(default_large_table_rows=1_000_000)
        q = query(relations=["orders o", "customers c"], joins=ORDERS_CUSTOMERS)
        findings = run(store, q, "UNINDEXED_FOREIGN_KEY", config)
        assert findings[0].severity is Severity.INFO
        assert findings[0].impact_band is ImpactBand.LOW


class TestNonSargablePredicate:
    """Rewrite advice for predicates no index can serve."""

    def test_function_on_column(self, store):
        """LOWER(status) = 'pending' suggests an expression index."""
        q = query(
            relations=["orders"],
            where={"kind": "function", "function": "lower", "inner": PENDING},
        )
        findings = run(store, q, "NON_SARGABLE_PREDICATE")

        assert len(findings) == 1
        finding = findings[0]
        assert finding.title == "Non-SARGable predicate on orders: LOWER(status) = 'pending'"
        assert finding.severity is Severity.WARNING
        assert finding.column == "status"
        assert "expression index" in finding.remediation

    def test_leading_wildcard(self, store):
        """LIKE '%x' suggests a trigram index."""
        q = query(
            relations=["orders"],
            where={"kind": "comparison", "column": "status", "operator": "LIKE", "value": "%ing"},
        )
        findings = run(store, q, "NON_SARGABLE_PREDICATE")
        assert "pg_trgm" in findings[0].remediation

    def test_small_table_skipped(self):
        """Tables under min_rows are not reported."""
        store = store_with(make_regions())
        q = query(
            relations=["regions"],
            where={"kind": "function", "function": "lower",
                   "inner": {"kind": "comparison", "column": "name", "operator": "=", "value": "x"}},
        )
        assert run(store, q, "NON_SARGABLE_PREDICATE") == ()

    def test_sargable_predicate_is_quiet(self, store):
        """Plain equality is fine."""
        assert run(store, query(relations=["orders"], where=PENDING), "NON_SARGABLE_PREDICATE") == ()


class TestOffsetPagination:
    """Deep OFFSET pages."""

    def test_deep_offset(self, store):
        """OFFSET 5000 is reported with keyset advice."""
        q = query(relations=["orders"], order_by=["id"], limit=20, offset=5000)
        findings = run(store, q, "OFFSET_PAGINATION")

        assert len(findings) == 1
        finding = findings[0]
        assert finding.title == "OFFSET 5,000 reads and discards that many rows on every page"
        assert finding.impact_band is ImpactBand.MEDIUM
        assert finding.metrics == {"offset": 5000, "limit": 20}
        assert "LIMIT 20" in finding.remediation

    def test_shallow_offset(self, store):
        """Offsets under min_offset are fine."""
        q = query(relations=["orders"], order_by=["id"], limit=20, offset=40)
        assert run(store, q, "OFFSET_PAGINATION") == ()

    def test_offset_without_order(self, store):
        """Without ORDER BY the advice asks for a stable order first."""
        q = query(relations=["orders"], offset=200_000)
        finding = run(store, q, "OFFSET_PAGINATION")[0]
        assert finding.impact_band is ImpactBand.HIGH
        assert finding.remediation.startswith("Add an ORDER BY")


class TestStaleStatistics:
    """Old statistics."""

    def test_old_statistics(self):
        """Statistics ten days old exceed the one-week default."""
        store = store_with(make_orders(analyzed_at=NOW - timedelta(days=10)))
        findings = run(store, query(relations=["orders"]), "STATISTICS_STALE")

        assert len(findings) == 1
        finding = findings[0]
        assert finding.title == "Statistics for orders are 10.0 days old"
        assert finding.remediation == "ANALYZE orders;"
        assert finding.low_confidence
        assert finding.metrics["age_hours"] == 240.0

    def test_recent_statistics(self):
        """Statistics from yesterday are current."""
        store = store_with(make_orders(analyzed_at=NOW - timedelta(days=1)))
        assert run(store, query(relations=["orders"]), "STATISTICS_STALE") == ()

    def test_unknown_analysis_time(self, store):
        """Tables without analyzed_at are not reported."""
        assert run(store, query(relations=["orders"]), "STATISTICS_STALE") == ()

    def test_configured_limit(self):
        """A rule threshold overrides the global limit."""
        store = store_with(make_orders(analyzed_at=NOW - timedelta(days=1)))
        config = AdvisorConfig(rules={"STATISTICS_STALE": RuleConfig(thresholds={"max_hours": 12})})
        assert len(run(store, query(relations=["orders"]), "STATISTICS_STALE", config)) == 1


class TestJoinRules:
    """Join order, feasibility, spill and truncation."""

    THREE_WAY = dict(
        relations=["orders o", "customers c", "regions r"],
        joins=ORDERS_CUSTOMERS + [{"left": "c", "right": "r", "on": [["c.region_id", "r.id"]]}],
        where={"kind": "comparison", "column": "r.name", "operator": "=", "value": "north"},
    )

    def test_join_order(self, store):
        """Joining the filtered region first is cheaper."""
        findings = run(store, query(**self.THREE_WAY), "SUBOPTIMAL_JOIN_ORDER")

        assert len(findings) == 1
        finding = findings[0]
        assert finding.title.startswith("Joining in a different order would cut plan cost by")
        assert finding.severity is Severity.INFO
        assert finding.metrics["reordered_cost"] < finding.metrics["current_cost"]
        assert finding.remediation.startswith("Join order: c INNER JOIN r ON c.region_id = r.id")

    def test_two_relations_have_one_order(self, store):
        """A single join edge cannot be reordered."""
        q = query(relations=["orders o", "customers c"], joins=ORDERS_CUSTOMERS)
        assert run(store, q, "SUBOPTIMAL_JOIN_ORDER") == ()

    def test_cartesian_product_without_nested_loop(self, store):
        """Unconnected relations with nested loop disabled are reported."""
        config = AdvisorConfig(cost=CostSettings(enabled_joins=("hash_join", "merge_join")))
        findings = run(store, query(relations=["orders o", "regions r"]), "NO_FEASIBLE_JOIN_STRATEGY", config)

        assert len(findings) == 1
        finding = findings[0]
        assert finding.title.startswith("No join condition between")
        assert finding.metrics == {"cartesian": 1}
        assert finding.low_confidence

    def test_cartesian_product_with_default_settings(self, store):
        """A missing join condition is reported even though a nested loop can run it."""
        findings = run(store, query(relations=["orders o", "regions r"]), "NO_FEASIBLE_JOIN_STRATEGY")

        assert len(findings) == 1
        finding = findings[0]
        assert finding.title == "No join condition between o and r"
        assert finding.rationale.startswith("no join condition (cartesian product).")
        assert finding.node_path == NodePath.root()

    def test_hash_spill(self, store):
        """A build side over budget is reported."""
        config = AdvisorConfig(cost=CostSettings(memory_budget_for_hash_build=1024))
        q = query(relations=["orders o", "customers c"], joins=ORDERS_CUSTOMERS)
        findings = run(store, q, "SPILL_RISK", config)

        assert len(findings) == 1
        finding = findings[0]
        assert finding.title == "Hash join build side (customers) exceeds the memory budget"
        assert finding.metrics["spill_bytes"] > 0
        assert finding.metrics["budget_bytes"] == 1024

    def test_no_spill_with_default_budget(self, store):
        """The default hash budget holds the customers build side."""
        q = query(relations=["orders o", "customers c"], joins=ORDERS_CUSTOMERS)
        assert run(store, q, "SPILL_RISK") == ()

    def test_truncated_search(self, store):
        """A cancelled search is reported as low-confidence."""
        cancel = threading.Event()
        cancel.set()
        q = query(relations=["orders o", "customers c"], joins=ORDERS_CUSTOMERS)
        findings = run(store, q, "ENUMERATION_TRUNCATED", cancel=cancel)

        assert len(findings) == 1
        assert findings[0].title == "Plan search stopped early (cancelled)"
        assert findings[0].low_confidence


class TestSubqueryRewrite:
    """NOT IN and correlated subqueries."""

    def test_not_in(self, store):
        """NOT IN (SELECT ...) should become NOT EXISTS."""
        q = query(
            relations=["orders"],
            where={"kind": "exists", "mode": "not_in", "column": "customer_id",
                   "relation": "customers", "subquery_column": "id"},
        )
        findings = run(store, q, "SUBQUERY_REWRITE")

        assert len(findings) == 1
        finding = findings[0]
        assert finding.title == "NOT IN subquery on customers should be NOT EXISTS"
        assert finding.severity is Severity.WARNING
        assert "NOT EXISTS (SELECT 1 FROM customers s WHERE s.id = " in finding.remediation

    def test_correlated_exists(self, store):
        """A correlated EXISTS is informational."""
        q = query(
            relations=["orders"],
            where={"kind": "exists", "mode": "exists", "relation": "customers", "correlated": True},
        )
        finding = run(store, q, "SUBQUERY_REWRITE")[0]
        assert finding.severity is Severity.INFO
        assert finding.title == "Correlated EXISTS subquery on customers runs per outer row"

    def test_uncorrelated_exists(self, store):
        """A plain EXISTS is left alone."""
        q = query(
            relations=["orders"],
            where={"kind": "exists", "mode": "exists", "relation": "customers"},
        )
        assert run(store, q, "SUBQUERY_REWRITE") == ()


class TestTableSkipRules:
    """Per-table rule suppression."""

    def test_skip_rules_for_table(self, store):
        """skip_rules silences a rule on one table only."""
        config = AdvisorConfig(table_overrides={"orders": TableOverrides(skip_rules=["MISSING_INDEX"])})
        assert run(store, query(relations=["orders"], where=PENDING), "MISSING_INDEX", config) == ()
