"""Tests for the normalized query model and the workload loader."""

import json

import pytest
from pydantic import ValidationError

from planadvisor.exceptions import WorkloadError
from planadvisor.query.loader import load_workload, parse_workload, validate_workload
from planadvisor.query.predicates import (
    ColumnRef,
    Comparison,
    Conjunction,
    Existence,
    ExistenceMode,
    FunctionWrapped,
    Operator,
    and_,
    conjuncts,
)
from planadvisor.query.spec import JoinEdge, JoinKind, OrderItem, QuerySpec, RelationRef

from conftest import FIXTURES_DIR


def eq(column: str, value) -> Comparison:
    return Comparison(column=column, operator="=", value=value)


class TestPredicates:
    """Parsing and rendering of predicate trees."""

    def test_dotted_column_reference(self):
        """'o.status' splits into relation and column."""
        ref = ColumnRef.model_validate("o.status")
        assert ref.relation == "o"
        assert ref.column == "status"
        assert str(ref) == "o.status"

    def test_operator_aliases_are_normalized(self):
        """'!=' and lowercase operators map onto the Operator enum."""
        assert Comparison(column="status", operator="!=", value="x").operator is Operator.NE
        assert Comparison(column="name", operator="not like", value="a%").operator is Operator.NOT_LIKE

    def test_between_requires_two_bounds(self):
        """BETWEEN with a single value is rejected."""
        with pytest.raises(ValidationError):
            Comparison(column="total", operator="BETWEEN", value=[1])

    def test_unary_operator_takes_no_operand(self):
        """IS NULL with a value is rejected."""
        with pytest.raises(ValidationError):
            Comparison(column="status", operator="IS NULL", value=1)

    def test_in_renders_value_list(self):
        """IN lists render as a parenthesized literal list."""
        cmp = Comparison(column="status", operator="IN", value=["a", "b"])
        assert cmp.to_sql() == "status IN ('a', 'b')"

    def test_string_literals_are_escaped(self):
        """Quotes inside string constants are doubled."""
        assert eq("name", "O'Brien").to_sql() == "name = 'O''Brien'"

    def test_function_wrapped_rendering(self):
        """The wrapper replaces the bare column in SQL."""
        wrapped = FunctionWrapped(function="lower", inner=eq("email", "a@b.c"))
        assert wrapped.to_sql() == "LOWER(email) = 'a@b.c'"

    def test_in_subquery_requires_outer_column(self):
        """IN / NOT IN need the outer column they test."""
        with pytest.raises(ValidationError):
            Existence(mode=ExistenceMode.NOT_IN, relation="customers")

    def test_conjuncts_flattens_nested_and(self):
        """Nested ANDs flatten into one list."""
        a, b, c = eq("a", 1), eq("b", 2), eq("c", 3)
        nested = Conjunction(items=(a, Conjunction(items=(b, c))))
        assert conjuncts(nested) == [a, b, c]
        assert conjuncts(None) == []

    def test_and_drops_none(self):
        """and_() ignores None and unwraps a single predicate."""
        a = eq("a", 1)
        assert and_(None, a, None) == a
        assert and_(None) is None


class TestQuerySpec:
    """Validation and helpers of QuerySpec."""

    def test_relation_parses_alias(self):
        """'orders AS o' yields table and alias."""
        rel = RelationRef.model_validate("orders AS o")
        assert rel.table == "orders"
        assert rel.key == "o"

    def test_unqualified_column_rejected_with_several_relations(self):
        """Multi-relation queries need qualified column references."""
        with pytest.raises(ValidationError, match="must be qualified"):
            QuerySpec(
                relations=["orders o", "customers c"],
                where=eq("status", "pending"),
            )

    def test_unknown_relation_rejected(self):
        """A column qualified by an unknown alias is rejected."""
        with pytest.raises(ValidationError, match="unknown relation"):
            QuerySpec(relations=["orders o"], where=eq("x.status", "pending"))

    def test_duplicate_aliases_rejected(self):
        """Two relations cannot share a key."""
        with pytest.raises(ValidationError):
            QuerySpec(relations=["orders o", "customers o"])

    def test_right_join_normalized_to_left(self):
        """RIGHT joins swap sides and become LEFT joins."""
        edge = JoinEdge.model_validate(
            {"left": "o", "right": "c", "kind": "right", "on": [["o.customer_id", "c.id"]]}
        )
        assert edge.kind is JoinKind.LEFT
        assert (edge.left, edge.right) == ("c", "o")

    def test_equi_keys_oriented_left_to_right(self):
        """equi_keys pairs (left column, right column) regardless of how ON is written."""
        edge = JoinEdge.model_validate(
            {"left": "o", "right": "c", "on": [["c.id", "o.customer_id"]]}
        )
        assert [(str(a), str(b)) for a, b in edge.equi_keys] == [("o.customer_id", "c.id")]

    def test_local_and_cross_predicates(self):
        """WHERE conjuncts split into per-relation and cross-relation parts."""
        local = eq("o.status", "pending")
        cross = Comparison(
            column="o.customer_id",
            operator="=",
            operand={"kind": "column", "column": "c.id"},
        )
        query = QuerySpec(relations=["orders o", "customers c"], where=and_(local, cross))
        assert query.local_predicates("o") == [local]
        assert query.local_predicates("c") == []
        assert query.cross_predicates() == [cross]

    def test_implicit_join_edge_from_where(self):
        """A cross-relation WHERE comparison becomes an inner join edge."""
        cross = Comparison(
            column="o.customer_id",
            operator="=",
            operand={"kind": "column", "column": "c.id"},
        )
        query = QuerySpec(relations=["orders o", "customers c"], where=cross)
        edges = query.join_edges()
        assert len(edges) == 1
        assert edges[0].kind is JoinKind.INNER
        assert edges[0].relations == frozenset({"o", "c"})

    def test_where_condition_joins_explicit_edge(self):
        """A WHERE comparison between explicitly joined relations extends that join."""
        extra = Comparison(
            column="o.total",
            operator="<",
            operand={"kind": "column", "column": "c.region_id"},
        )
        query = QuerySpec.model_validate({
            "relations": ["orders o", "customers c"],
            "joins": [{"left": "o", "right": "c", "on": [["o.customer_id", "c.id"]]}],
            "where": extra,
        })
        edges = query.join_edges()
        assert len(edges) == 1
        assert [(str(a), str(b)) for a, b in edges[0].equi_keys] == [("o.customer_id", "c.id")]
        assert edges[0].other_conditions == [extra]
        assert query.joins[0].condition is not edges[0].condition

    def test_columns_for(self):
        """columns_for collects every column of a relation the query touches."""
        query = QuerySpec(
            relations=["orders"],
            select=["id"],
            where=eq("status", "pending"),
            order_by=["created_at DESC"],
        )
        assert query.columns_for("orders") == {"id", "status", "created_at"}
        assert QuerySpec(relations=["orders"]).columns_for("orders") is None

    def test_order_item_direction(self):
        """'col DESC' parses as a descending order item."""
        assert OrderItem.model_validate("created_at DESC").descending is True
        assert OrderItem.model_validate("created_at").descending is False

    def test_to_sql(self):
        """to_sql renders joins, filters, ordering and paging."""
        query = QuerySpec.model_validate({
            "relations": ["orders o", "customers c"],
            "select": ["o.id", "c.name"],
            "joins": [{"left": "o", "right": "c", "on": [["o.customer_id", "c.id"]]}],
            "where": {"kind": "comparison", "column": "o.status", "operator": "=", "value": "pending"},
            "order_by": ["o.id"],
            "limit": 10,
        })
        assert query.to_sql() == (
            "SELECT o.id, c.name FROM orders o INNER JOIN customers c ON o.customer_id = c.id "
            "WHERE o.status = 'pending' ORDER BY o.id LIMIT 10"
        )


class TestWorkloadLoader:
    """Loading workload files."""

    def test_loads_fixture(self):
        """The shop fixture loads with its tables and queries."""
        workload = load_workload(FIXTURES_DIR / "shop.yaml")
        assert {t.name for t in workload.tables} == {"orders", "customers", "regions"}
        assert workload.query("pending_orders").relations[0].table == "orders"

    def test_unknown_query_name(self):
        """Asking for a missing query lists the known ones."""
        workload = load_workload(FIXTURES_DIR / "shop.yaml")
        with pytest.raises(WorkloadError, match="pending_orders"):
            workload.query("nope")

    def test_missing_file(self, tmp_path):
        """A missing file is a WorkloadError, not an OSError."""
        with pytest.raises(WorkloadError, match="File not found"):
            load_workload(tmp_path / "missing.yaml")

    def test_empty_content(self):
        """Empty input is rejected."""
        with pytest.raises(WorkloadError, match="empty"):
            parse_workload("   \n")

    def test_invalid_yaml(self):
        """Broken YAML is reported as such."""
        with pytest.raises(WorkloadError, match="Invalid YAML"):
            parse_workload("tables: [unclosed")

    def test_invalid_json(self):
        """JSON errors carry line and column."""
        with pytest.raises(WorkloadError, match="line 1"):
            parse_workload("{not json", fmt="json")

    def test_validation_error_names_field(self):
        """Validation errors name the offending location."""
        data = {"tables": [{"name": "t", "row_count": -5}]}
        with pytest.raises(WorkloadError, match="row_count"):
            validate_workload(data)

    def test_non_mapping_rejected(self):
        """A top-level list is not a workload."""
        with pytest.raises(WorkloadError, match="Expected a mapping"):
            validate_workload([1, 2, 3])

    def test_duplicate_query_names(self):
        """Query names must be unique."""
        data = {
            "tables": [{"name": "t", "row_count": 1, "columns": [{"name": "a"}]}],
            "queries": [{"name": "q", "relations": ["t"]}, {"name": "q", "relations": ["t"]}],
        }
        with pytest.raises(WorkloadError, match="duplicate query names"):
            validate_workload(data)

    def test_json_workload(self, tmp_path):
        """.json files are parsed as JSON; columns may be given as a mapping."""
        path = tmp_path / "w.json"
        path.write_text(json.dumps({
            "tables": [{"name": "t", "row_count": 100, "columns": {"a": {"n_distinct": 10}}}],
            "queries": [{"name": "q", "relations": ["t"]}],
        }))
        workload = load_workload(path)
        assert workload.tables[0].column("a").n_distinct == 10
        assert workload.store().snapshot().has_table("t")
