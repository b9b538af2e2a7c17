"""Tests for sargability classification."""

import pytest

from planadvisor.exceptions import UnknownColumnError
from planadvisor.planner.classifier import (
    AccessKind,
    NonSargable,
    NonSargableReason,
    PredicateClassifier,
    Sargable,
    parameter,
)
from planadvisor.query.predicates import (
    ColumnRef,
    Comparison,
    Conjunction,
    Disjunction,
    Existence,
    FunctionWrapped,
)
from planadvisor.stats.models import Index

from conftest import make_orders


def cmp(column: str, operator: str, value=None, **kwargs) -> Comparison:
    if operator in ("IS NULL", "IS NOT NULL"):
        return Comparison(column=column, operator=operator, **kwargs)
    return Comparison(column=column, operator=operator, value=value, **kwargs)


STATUS_DATE = Index(name="ix_status_created", columns=("status", "created_at"))
CUSTOMER = Index(name="ix_customer", columns=("customer_id",))
STATUS = Index(name="ix_status", columns=("status",))
TOTAL = Index(name="ix_total", columns=("total",))
CUSTOMER_STATUS = Index(name="ix_customer_status", columns=("customer_id", "status"))


@pytest.fixture
def indexed_orders():
    base = make_orders()
    return base.model_copy(update={"indexes": base.indexes + (STATUS_DATE, CUSTOMER, STATUS)})


@pytest.fixture
def classifier(indexed_orders):
    return PredicateClassifier(indexed_orders)


class TestAssess:
    """Single predicates, independent of any index."""

    def test_equality_operators(self, classifier):
        """=, IN and IS NULL are equality access."""
        assert classifier.assess(cmp("status", "=", "pending")) is AccessKind.EQUALITY
        assert classifier.assess(cmp("status", "IN", ["a", "b"])) is AccessKind.EQUALITY
        assert classifier.assess(cmp("status", "IS NULL")) is AccessKind.EQUALITY

    def test_range_operators(self, classifier):
        """Inequalities and BETWEEN are range access."""
        assert classifier.assess(cmp("total", "<", 100)) is AccessKind.RANGE
        assert classifier.assess(cmp("total", "BETWEEN", [1, 2])) is AccessKind.RANGE

    def test_like_patterns(self, classifier):
        """Prefix patterns are seekable, leading wildcards are not."""
        assert classifier.assess(cmp("status", "LIKE", "pen%")) is AccessKind.PREFIX_LIKE
        assert classifier.assess(cmp("status", "LIKE", "pending")) is AccessKind.EQUALITY
        result = classifier.assess(cmp("status", "LIKE", "%ing"))
        assert isinstance(result, NonSargable)
        assert result.reason is NonSargableReason.LEADING_WILDCARD

    def test_function_on_column(self, classifier):
        """A function around the column defeats the index."""
        wrapped = FunctionWrapped(function="lower", inner=cmp("status", "=", "pending"))
        result = classifier.assess(wrapped)
        assert result.reason is NonSargableReason.FUNCTION_ON_COLUMN
        assert "LOWER(status)" in result.detail

    def test_arithmetic_on_column(self, classifier):
        """Arithmetic on the column suggests moving it to the constant side."""
        wrapped = FunctionWrapped(function="+", inner=cmp("total", "=", 10), expression="total + 1")
        result = classifier.assess(wrapped)
        assert result.reason is NonSargableReason.FUNCTION_ON_COLUMN
        assert "constant side" in result.detail

    def test_negated_operator(self, classifier):
        """<> cannot bound a seek."""
        result = classifier.assess(cmp("status", "<>", "shipped"))
        assert result.reason is NonSargableReason.NEGATED_OPERATOR

    def test_ilike(self, classifier):
        """ILIKE needs a case-insensitive index."""
        result = classifier.assess(cmp("status", "ILIKE", "pen%"))
        assert result.reason is NonSargableReason.FUNCTION_ON_COLUMN

    def test_numeric_constant_on_text_column(self, classifier):
        """Comparing a text column with a number coerces the column."""
        result = classifier.assess(cmp("status", "=", 5))
        assert result.reason is NonSargableReason.TYPE_COERCION

    def test_same_row_column_comparison(self, classifier):
        """Comparing two columns of one row is not seekable."""
        predicate = Comparison(
            column="total", operator=">", operand={"kind": "column", "column": "id"}
        )
        assert classifier.assess(predicate).reason is NonSargableReason.ROW_DEPENDENT_OPERAND

    def test_correlated_expression(self, classifier):
        """A correlated operand changes per row."""
        predicate = Comparison(
            column="total",
            operator=">",
            operand={"kind": "expression", "text": "o2.total", "correlated": True},
        )
        assert classifier.assess(predicate).reason is NonSargableReason.ROW_DEPENDENT_OPERAND

    def test_subquery(self, classifier):
        """Subquery tests are never index conditions."""
        result = classifier.assess(Existence(mode="exists", relation="customers"))
        assert result.reason is NonSargableReason.SUBQUERY

    def test_disjunction_on_one_column(self, classifier):
        """OR of equalities on one column behaves like IN."""
        predicate = Disjunction(items=(cmp("status", "=", "a"), cmp("status", "=", "b")))
        assert classifier.assess(predicate) is AccessKind.EQUALITY

    def test_disjunction_across_columns(self, classifier):
        """OR across columns cannot drive one seek."""
        predicate = Disjunction(items=(cmp("status", "=", "a"), cmp("customer_id", "=", 1)))
        assert classifier.assess(predicate).reason is NonSargableReason.MIXED_DISJUNCTION

    def test_unknown_column(self, classifier):
        """Predicates on missing columns raise."""
        with pytest.raises(UnknownColumnError):
            classifier.assess(cmp("nope", "=", 1))


class TestClassify:
    """Predicates against a specific index."""

    def test_equality_then_range_binds_two_columns(self, classifier):
        """Equality on the first key column lets a range bind the second."""
        status = cmp("status", "=", "pending")
        created = cmp("created_at", ">=", "2024-06-01")
        total = cmp("total", ">", 100)
        result = classifier.classify([status, created, total], STATUS_DATE)

        assert isinstance(result, Sargable)
        assert result.key_prefix_length == 2
        assert result.access_kind is AccessKind.RANGE
        assert result.equality_columns == ("status",)
        assert result.bound_columns == ("status", "created_at")
        assert result.residual == (total,)

    def test_range_ends_prefix(self, classifier):
        """A range on the first key column stops the prefix there."""
        status = cmp("status", ">", "a")
        created = cmp("created_at", "=", "2024-06-01")
        result = classifier.classify([status, created], STATUS_DATE)
        assert result.key_prefix_length == 1
        assert result.access_kind is AccessKind.RANGE
        assert result.residual == (created,)

    def test_not_on_leading_column(self, classifier):
        """A predicate on the second key column alone cannot seek."""
        result = classifier.classify(cmp("created_at", "=", "2024-06-01"), STATUS_DATE)
        assert isinstance(result, NonSargable)
        assert result.reason is NonSargableReason.NOT_INDEX_PREFIX

    def test_intrinsic_failure_is_reported(self, classifier):
        """A function-wrapped leading column reports the function, not the prefix."""
        wrapped = FunctionWrapped(function="lower", inner=cmp("status", "=", "pending"))
        result = classifier.classify(wrapped, STATUS)
        assert result.reason is NonSargableReason.FUNCTION_ON_COLUMN

    def test_no_predicate(self, classifier):
        """Nothing to seek with."""
        assert classifier.classify([], STATUS).reason is NonSargableReason.NO_PREDICATE

    def test_probe_parameter_binds_key(self, classifier):
        """Join keys supplied per probe bind index columns like constants."""
        param = parameter(ColumnRef(column="customer_id"), "c.id")
        result = classifier.classify([], CUSTOMER, parameters=[param])
        assert isinstance(result, Sargable)
        assert result.access_kind is AccessKind.EQUALITY
        assert result.bound == (param,)

    def test_partial_index_requires_implied_condition(self, indexed_orders):
        """A partial index is usable only when the query implies its predicate."""
        partial = Index(
            name="ix_pending_created",
            columns=("created_at",),
            predicate=cmp("status", "=", "pending"),
        )
        classifier = PredicateClassifier(indexed_orders.with_index(partial))
        created = cmp("created_at", ">", "2024-06-01")

        missing = classifier.classify([created], partial)
        assert missing.reason is NonSargableReason.PARTIAL_INDEX_NOT_IMPLIED

        status = cmp("status", "=", "pending")
        result = classifier.classify([created, status], partial)
        assert isinstance(result, Sargable)
        assert status in result.bound
        assert result.residual == ()

    def test_classify_all(self, classifier):
        """classify_all returns one result per index."""
        results = classifier.classify_all([cmp("customer_id", "=", 1)])
        assert isinstance(results["ix_customer"], Sargable)
        assert isinstance(results["orders_pkey"], NonSargable)

    def test_bitmap_union_candidates(self, classifier):
        """OR across two indexed columns picks one index per branch."""
        predicate = Disjunction(items=(cmp("status", "=", "a"), cmp("customer_id", "=", 1)))
        picks = classifier.bitmap_union_candidates(predicate)
        assert picks is not None
        assert {p.index.name for p in picks} == {"ix_status", "ix_customer"}

    def test_bitmap_union_needs_every_branch_indexed(self, classifier):
        """A branch with no usable index rules out the union."""
        predicate = Disjunction(items=(cmp("status", "=", "a"), cmp("total", "=", 1)))
        assert classifier.bitmap_union_candidates(predicate) is None

    def test_non_sargable_lists_intrinsic_failures(self, classifier):
        """Only reasons that hold for any index are listed."""
        wrapped = FunctionWrapped(function="lower", inner=cmp("status", "=", "pending"))
        found = classifier.non_sargable([wrapped, cmp("created_at", "=", "2024-06-01")])
        assert [f.reason for f in found] == [NonSargableReason.FUNCTION_ON_COLUMN]

    def test_key_order_decides_prefix_length(self, indexed_orders):
        """(status, created_at) binds both columns; (created_at, status) only one."""
        reversed_key = Index(name="ix_created_status", columns=("created_at", "status"))
        classifier = PredicateClassifier(indexed_orders.with_index(reversed_key))
        predicates = [cmp("status", "=", "shipped"), cmp("created_at", ">=", "2024-06-01")]

        assert classifier.classify(predicates, STATUS_DATE).key_prefix_length == 2
        assert classifier.classify(predicates, reversed_key).key_prefix_length == 1

    def test_disjunction_with_mixed_access_kinds(self, classifier):
        """An equality branch OR-ed with a range branch cannot share one seek."""
        predicate = Disjunction(items=(cmp("total", "=", 5), cmp("total", ">", 900)))
        result = classifier.classify(predicate, TOTAL)
        assert isinstance(result, NonSargable)
        assert result.reason is NonSargableReason.MIXED_DISJUNCTION

    def test_disjunction_of_ranges_on_one_column(self, classifier):
        """Range branches on the same key column seek it together."""
        predicate = Disjunction(items=(cmp("total", "<", 5), cmp("total", ">", 900)))
        result = classifier.classify(predicate, TOTAL)
        assert isinstance(result, Sargable)
        assert result.key_prefix_length == 1
        assert result.access_kind is AccessKind.RANGE
        assert result.bound == (predicate,)
        assert result.residual == ()

    def test_disjunction_binding_two_key_columns(self, classifier):
        """Branches binding the same two-column prefix by equality are seekable."""
        predicate = Disjunction(items=(
            Conjunction(items=(cmp("customer_id", "=", 1), cmp("status", "=", "pending"))),
            Conjunction(items=(cmp("customer_id", "=", 2), cmp("status", "=", "shipped"))),
        ))
        result = classifier.classify(predicate, CUSTOMER_STATUS)
        assert isinstance(result, Sargable)
        assert result.key_prefix_length == 2
        assert result.access_kind is AccessKind.EQUALITY
        assert result.equality_columns == ("customer_id", "status")
        assert classifier.non_sargable([predicate]) == []

    def test_disjunction_with_unequal_prefixes(self, classifier):
        """Branches binding one and two key columns do not form one seek."""
        predicate = Disjunction(items=(
            Conjunction(items=(cmp("customer_id", "=", 1), cmp("status", "=", "pending"))),
            cmp("customer_id", "=", 2),
        ))
        result = classifier.classify(predicate, CUSTOMER_STATUS)
        assert isinstance(result, NonSargable)
        assert result.reason is NonSargableReason.MIXED_DISJUNCTION

    def test_disjunction_extended_by_other_conjuncts(self, classifier):
        """A range on the next key column extends every OR branch's prefix."""
        either = Disjunction(items=(cmp("status", "=", "a"), cmp("status", "=", "b")))
        created = cmp("created_at", ">=", "2024-06-01")
        result = classifier.classify([either, created], STATUS_DATE)
        assert isinstance(result, Sargable)
        assert result.key_prefix_length == 2
        assert result.access_kind is AccessKind.RANGE
        assert result.bound == (either, created)
        assert result.residual == ()
