"""Normalized query model: predicates, relations, joins."""

from planadvisor.query.predicates import (
    ColumnOperand,
    ColumnRef,
    Comparison,
    Conjunction,
    Constant,
    Disjunction,
    Existence,
    ExistenceMode,
    Expression,
    FunctionWrapped,
    Operator,
    Predicate,
    and_,
    conjuncts,
)
from planadvisor.query.spec import JoinEdge, JoinKind, OrderItem, QuerySpec, RelationRef

__all__ = [
    "ColumnOperand",
    "ColumnRef",
    "Comparison",
    "Conjunction",
    "Constant",
    "Disjunction",
    "Existence",
    "ExistenceMode",
    "Expression",
    "FunctionWrapped",
    "JoinEdge",
    "JoinKind",
    "Operator",
    "OrderItem",
    "Predicate",
    "QuerySpec",
    "RelationRef",
    "and_",
    "conjuncts",
]
