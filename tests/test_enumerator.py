"""Tests for plan enumeration, plan nodes and node paths."""

import threading

import pytest

from planadvisor.config import CostSettings
from planadvisor.exceptions import NoFeasibleJoinStrategyError
from planadvisor.planner.enumerator import PlanEnumerator, order_columns
from planadvisor.planner.path import NodePath
from planadvisor.planner.plan import PlanKind, describe, explain, node_count, scans
from planadvisor.query.spec import QuerySpec
from planadvisor.stats.models import Index
from planadvisor.stats.store import StatisticsStore

from conftest import NOW, make_customers, make_orders


def query(**fields) -> QuerySpec:
    return QuerySpec.model_validate(fields)


ORDERS_CUSTOMERS = [{"left": "o", "right": "c", "on": [["o.customer_id", "c.id"]]}]


def enumerator(store, **settings) -> PlanEnumerator:
    return PlanEnumerator(store.snapshot(), CostSettings(**settings))


class TestAccessPaths:
    """Single-relation plans."""

    def test_seq_scan_without_usable_index(self, store):
        """With no index on the filtered column, the table is scanned."""
        q = query(relations=["orders"], where={"kind": "comparison", "column": "status", "operator": "=", "value": "pending"})
        result = enumerator(store).enumerate(q)
        assert result.root.kind is PlanKind.SEQ_SCAN
        assert result.total_cost == pytest.approx(10157.0)
        assert not result.low_confidence

    def test_index_on_status_beats_seq_scan(self):
        """One order in five pending: an index on status undercuts the 10,157 seq scan."""
        columns = tuple(
            c.model_copy(update={"most_common_values": {"pending": 0.2, "shipped": 0.7}})
            if c.name == "status" else c
            for c in make_orders().columns
        )
        store = StatisticsStore([make_orders(columns=columns)], clock=lambda: NOW)
        q = query(relations=["orders"], where={"kind": "comparison", "column": "status", "operator": "=", "value": "pending"})

        before = enumerator(store).enumerate(q)
        assert before.root.kind is PlanKind.SEQ_SCAN
        assert before.total_cost == pytest.approx(10157.0)

        store.create_index("orders", Index(name="ix_orders_status", columns=("status",)))
        after = enumerator(store).enumerate(q)
        assert after.root.kind in (PlanKind.BITMAP_SCAN, PlanKind.INDEX_SCAN)
        used = after.root.indexes if after.root.kind is PlanKind.BITMAP_SCAN else (after.root.index,)
        assert [i.name for i in used] == ["ix_orders_status"]
        assert after.total_cost < before.total_cost

    def test_candidates_sorted_cheapest_first(self, store):
        """Access paths come back ordered by cost."""
        q = query(relations=["orders"], where={"kind": "comparison", "column": "id", "operator": "=", "value": 7})
        paths = enumerator(store).access_paths(q, "orders")
        costs = [p.cost for p in paths]
        assert costs == sorted(costs)
        assert {p.kind for p in paths} == {PlanKind.INDEX_SCAN, PlanKind.BITMAP_SCAN, PlanKind.SEQ_SCAN}
        assert paths[-1].kind is PlanKind.SEQ_SCAN

    def test_bitmap_for_scattered_rows(self):
        """Uncorrelated matches favour a bitmap heap scan."""
        orders = make_orders().with_index(Index(name="ix_orders_customer_id", columns=("customer_id",)))
        store = StatisticsStore([orders], clock=lambda: NOW)
        q = query(relations=["orders"], where={"kind": "comparison", "column": "customer_id", "operator": "=", "value": 42})
        assert enumerator(store).enumerate(q).root.kind is PlanKind.BITMAP_SCAN

    def test_index_only_scan_when_covering(self):
        """An index holding every needed column avoids the heap."""
        orders = make_orders().with_index(Index(name="ix_orders_customer_id", columns=("customer_id",)))
        store = StatisticsStore([orders], clock=lambda: NOW)
        q = query(
            relations=["orders"],
            select=["customer_id"],
            where={"kind": "comparison", "column": "customer_id", "operator": "=", "value": 42},
        )
        assert enumerator(store).enumerate(q).root.kind is PlanKind.INDEX_ONLY_SCAN

    def test_disabled_index_strategies(self, store):
        """Disabled strategies are not considered."""
        q = query(relations=["orders"], where={"kind": "comparison", "column": "id", "operator": "=", "value": 7})
        result = enumerator(store, enabled_scans=("seq_scan",)).enumerate(q)
        assert result.root.kind is PlanKind.SEQ_SCAN
        assert len(result.scan_candidates["orders"]) == 1

    def test_order_by_with_limit_reads_index_in_order(self, store):
        """ORDER BY id LIMIT 10 walks the primary key and stops early."""
        q = query(relations=["orders"], order_by=["id"], limit=10)
        result = enumerator(store).enumerate(q)
        assert result.root.kind is PlanKind.INDEX_SCAN
        assert result.root.classification is None
        assert result.sort_cost == 0.0
        assert result.limit_fraction < 1.0
        assert result.total_cost < result.root.cost

    def test_order_by_without_index_sorts(self, store):
        """Ordering on an unindexed column adds an explicit sort."""
        q = query(relations=["orders"], order_by=["total"])
        result = enumerator(store).enumerate(q)
        assert result.root.kind is PlanKind.SEQ_SCAN
        assert result.sort_cost > 0.0
        assert result.limit_fraction == 1.0

    def test_order_columns(self):
        """Mixed directions cannot come from one index scan."""
        assert order_columns(query(relations=["orders"], order_by=["id", "total"])) == (
            "orders.id",
            "orders.total",
        )
        assert order_columns(query(relations=["orders"], order_by=["id", "total DESC"])) is None
        assert order_columns(query(relations=["orders"])) == ()


class TestJoins:
    """Join strategy choice."""

    def test_selective_outer_uses_parameterized_probe(self, store):
        """One outer row probes customers through its primary key."""
        q = query(
            relations=["orders o", "customers c"],
            joins=ORDERS_CUSTOMERS,
            where={"kind": "comparison", "column": "o.id", "operator": "=", "value": 7},
        )
        root = enumerator(store).enumerate(q).root
        assert root.kind is PlanKind.NESTED_LOOP
        assert root.inner_index.name == "customers_pkey"
        assert root.outer.relations == frozenset({"o"})
        assert "Inner probe via customers_pkey" in explain(root)

    def test_large_join_uses_hash_join(self, store):
        """Without a filter the smaller side becomes the hash build side."""
        q = query(relations=["orders o", "customers c"], joins=ORDERS_CUSTOMERS)
        result = enumerator(store).enumerate(q)
        assert result.root.kind is PlanKind.HASH_JOIN
        assert result.root.inner.relations == frozenset({"c"})
        assert result.root.rows == 500_000
        assert result.root.spill_bytes == 0

    def test_large_join_without_inner_index_uses_hash_join(self):
        """Two large tables and no index on the join key: hash join beats every nested loop."""
        customers = make_customers(row_count=200_000, indexes=())
        store = StatisticsStore([make_orders(), customers], clock=lambda: NOW)
        q = query(relations=["orders o", "customers c"], joins=ORDERS_CUSTOMERS)
        result = enumerator(store).enumerate(q, explain=True)

        assert result.root.kind is PlanKind.HASH_JOIN
        assert not result.low_confidence
        loops = [n for n in result.join_candidates[0] if n.kind is PlanKind.NESTED_LOOP]
        assert loops
        assert all(n.inner_index is None and n.cost > result.root.cost for n in loops)

    def test_small_hash_budget_spills(self, store):
        """A tiny memory budget makes the build side spill."""
        q = query(relations=["orders o", "customers c"], joins=ORDERS_CUSTOMERS)
        result = enumerator(store, memory_budget_for_hash_build=1024).enumerate(q)
        assert result.root.kind is PlanKind.HASH_JOIN
        assert result.root.spill_bytes > 0

    def test_explain_keeps_join_candidates(self, store):
        """Explain mode records every candidate of each join step."""
        q = query(relations=["orders o", "customers c"], joins=ORDERS_CUSTOMERS)
        result = enumerator(store).enumerate(q, explain=True)
        assert len(result.join_candidates) == 1
        kinds = {node.kind for node in result.join_candidates[0]}
        assert {PlanKind.NESTED_LOOP, PlanKind.HASH_JOIN, PlanKind.MERGE_JOIN} <= kinds
        assert result.steps >= 3

    def test_full_join_without_equality_falls_back(self, store):
        """A FULL JOIN on an inequality gets a low-confidence nested loop."""
        q = query(
            relations=["orders o", "customers c"],
            joins=[{
                "left": "o",
                "right": "c",
                "kind": "full",
                "condition": {
                    "kind": "comparison",
                    "column": "o.total",
                    "operator": ">",
                    "operand": {"kind": "column", "column": "c.region_id"},
                },
            }],
        )
        result = enumerator(store).enumerate(q)
        assert result.low_confidence
        assert result.root.low_confidence
        assert result.failures[0].reason.startswith("FULL JOIN needs an equality condition")

        with pytest.raises(NoFeasibleJoinStrategyError):
            PlanEnumerator(store.snapshot(), strict=True).enumerate(q)

    def test_cartesian_product_without_nested_loop(self, store):
        """Unconnected relations cannot be joined once nested loop is disabled."""
        q = query(relations=["orders o", "regions r"])
        result = enumerator(store, enabled_joins=("hash_join", "merge_join")).enumerate(q)
        failure = result.failures[0]
        assert failure.cartesian
        assert failure.reason == "no equality condition and nested loop is disabled"

    def test_cartesian_product_is_flagged_by_default(self, store):
        """Unconnected relations get a flagged fallback even with nested loop enabled."""
        q = query(relations=["orders o", "regions r"])
        result = enumerator(store).enumerate(q)
        assert result.root.kind is PlanKind.NESTED_LOOP
        assert result.root.low_confidence
        assert result.low_confidence
        assert [f.cartesian for f in result.failures] == [True]
        assert result.failures[0].reason == "no join condition (cartesian product)"

        with pytest.raises(NoFeasibleJoinStrategyError):
            PlanEnumerator(store.snapshot(), strict=True).enumerate(q)

    def test_where_condition_on_joined_pair_reduces_rows(self, store):
        """A WHERE comparison between joined relations filters the join output."""
        plain = query(relations=["orders o", "customers c"], joins=ORDERS_CUSTOMERS)
        filtered = query(
            relations=["orders o", "customers c"],
            joins=ORDERS_CUSTOMERS,
            where={
                "kind": "comparison",
                "column": "o.total",
                "operator": "<",
                "operand": {"kind": "column", "column": "c.region_id"},
            },
        )
        planner = enumerator(store)
        assert planner.enumerate(filtered).root.rows < planner.enumerate(plain).root.rows
        assert "o.total < c.region_id" in explain(planner.enumerate(filtered).root)

    def test_edge_order_changes_cost(self, store):
        """Joining the filtered dimension first is cheaper than the written order."""
        q = query(
            relations=["orders o", "customers c", "regions r"],
            joins=ORDERS_CUSTOMERS + [{"left": "c", "right": "r", "on": [["c.region_id", "r.id"]]}],
            where={"kind": "comparison", "column": "r.name", "operator": "=", "value": "north"},
        )
        planner = enumerator(store)
        written = planner.enumerate(q)
        edges = q.join_edges()
        reordered = planner.enumerate(q, edge_order=[edges[1], edges[0]])
        assert reordered.total_cost < written.total_cost
        assert [e.right for e in reordered.edge_order] == ["r", "c"]
        assert {s.relation for s in scans(written.root)} == {"o", "c", "r"}


class TestWorkBounds:
    """Truncation by step budget and cancellation."""

    THREE_WAY = dict(
        relations=["orders o", "customers c", "regions r"],
        joins=ORDERS_CUSTOMERS + [{"left": "c", "right": "r", "on": [["c.region_id", "r.id"]]}],
    )

    def test_step_budget(self, store):
        """Exceeding max_join_enumeration_steps truncates the search."""
        result = enumerator(store, max_join_enumeration_steps=1).enumerate(query(**self.THREE_WAY))
        assert result.truncated
        assert result.truncation_reason.startswith("max_join_enumeration_steps")
        assert result.low_confidence
        assert result.root.relations == frozenset({"o", "c", "r"})

    def test_cancel_event(self, store):
        """A set cancel event stops exploration but still returns a plan."""
        cancel = threading.Event()
        cancel.set()
        q = query(relations=["orders o", "customers c"], joins=ORDERS_CUSTOMERS)
        result = enumerator(store).enumerate(q, cancel=cancel)
        assert result.truncated
        assert result.truncation_reason == "cancelled"
        assert result.root.relations == frozenset({"o", "c"})

    def test_expired_deadline(self, store):
        """A deadline in the past truncates."""
        q = query(relations=["orders o", "customers c"], joins=ORDERS_CUSTOMERS)
        result = enumerator(store).enumerate(q, deadline=0.0)
        assert result.truncation_reason == "deadline exceeded"


class TestPlanNodes:
    """Rendering and traversal helpers."""

    def test_describe_and_count(self, store):
        """describe() names the node; node_count() counts the tree."""
        q = query(relations=["orders o", "customers c"], joins=ORDERS_CUSTOMERS)
        root = enumerator(store).enumerate(q).root
        assert describe(root) == "Hash Join"
        assert node_count(root) == 3
        assert describe(root.outer) == "Seq Scan on orders o"

    def test_walk_paths(self, store):
        """walk() yields the outer/inner path of every node."""
        q = query(relations=["orders o", "customers c"], joins=ORDERS_CUSTOMERS)
        root = enumerator(store).enumerate(q).root
        paths = [str(path) for path, _ in root.walk()]
        assert paths == ["Plan", "Plan → outer", "Plan → inner"]


class TestNodePath:
    """NodePath behaviour."""

    def test_child(self):
        """child() extends the path by one side."""
        path = NodePath.root().child(1).child(0)
        assert path.segments == ("Plan", "inner", "outer")
        assert path == NodePath(("Plan", "inner", "outer"))
        assert str(path) == "Plan → inner → outer"

    def test_invalid_child(self):
        """Joins have exactly two children."""
        with pytest.raises(ValueError):
            NodePath.root().child(2)
