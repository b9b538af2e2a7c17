"""
Normalized predicate trees.

An upstream parser (or a workload file) hands the advisor queries in this
shape. The node set is closed and tagged by ``kind`` so pydantic can
validate nested trees from plain dicts:

    comparison   column <op> operand
    and / or     conjunction / disjunction of predicates
    exists       EXISTS / NOT EXISTS / IN / NOT IN over a subquery
    function     a function, cast or arithmetic expression wrapped around
                 the column side of a comparison

Operands are tagged too: a constant, an opaque expression (``correlated``
marks expressions that depend on the row being tested) or another column.
"""

from __future__ import annotations

from datetime import date, datetime
from enum import Enum
from typing import Annotated, Any, Iterator, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator

Scalar = Union[bool, int, float, str, date, datetime, None]


class ColumnRef(BaseModel):
    """A column, optionally qualified by relation alias or table name."""

    model_config = ConfigDict(frozen=True)

    relation: str | None = None
    column: str = Field(..., min_length=1)

    @model_validator(mode="before")
    @classmethod
    def _parse_dotted(cls, data: Any) -> Any:
        if isinstance(data, str):
            if "." in data:
                relation, column = data.split(".", 1)
                return {"relation": relation, "column": column}
            return {"column": data}
        return data

    @property
    def is_star(self) -> bool:
        return self.column == "*"

    def __str__(self) -> str:
        return f"{self.relation}.{self.column}" if self.relation else self.column

    def to_sql(self, qualify: bool = True) -> str:
        return str(self) if qualify else self.column


class Operator(str, Enum):
    EQ = "="
    NE = "<>"
    LT = "<"
    LE = "<="
    GT = ">"
    GE = ">="
    BETWEEN = "BETWEEN"
    IN = "IN"
    LIKE = "LIKE"
    NOT_LIKE = "NOT LIKE"
    ILIKE = "ILIKE"
    IS_NULL = "IS NULL"
    IS_NOT_NULL = "IS NOT NULL"

    @property
    def is_range(self) -> bool:
        return self in (Operator.LT, Operator.LE, Operator.GT, Operator.GE, Operator.BETWEEN)

    @property
    def is_unary(self) -> bool:
        return self in (Operator.IS_NULL, Operator.IS_NOT_NULL)


_OPERATOR_ALIASES = {"!=": "<>", "==": "="}


# ── Operands ─────────────────────────────────────────────────────────────


class Constant(BaseModel):
    """A literal value; tuples carry IN lists and BETWEEN bounds."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["constant"] = "constant"
    value: Scalar | tuple[Scalar, ...] = None

    @model_validator(mode="before")
    @classmethod
    def _lists_to_tuples(cls, data: Any) -> Any:
        if isinstance(data, dict) and isinstance(data.get("value"), list):
            return {**data, "value": tuple(data["value"])}
        return data

    def to_sql(self, qualify: bool = True) -> str:
        if isinstance(self.value, tuple):
            return "(" + ", ".join(_literal(v) for v in self.value) + ")"
        return _literal(self.value)


class Expression(BaseModel):
    """
    An expression opaque to the advisor.

    ``correlated`` means the value depends on the row being tested (so the
    comparison cannot drive an index seek). A non-correlated expression is
    a bind parameter or a value computed once per query, e.g. ``now()``.
    """

    model_config = ConfigDict(frozen=True)

    kind: Literal["expression"] = "expression"
    text: str = Field(..., min_length=1)
    correlated: bool = False

    def to_sql(self, qualify: bool = True) -> str:
        return self.text


class ColumnOperand(BaseModel):
    """Another column, as in join conditions."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["column"] = "column"
    column: ColumnRef

    def to_sql(self, qualify: bool = True) -> str:
        return self.column.to_sql(qualify)


Operand = Annotated[Union[Constant, Expression, ColumnOperand], Field(discriminator="kind")]


def _literal(value: Any) -> str:
    if value is None:
        return "NULL"
    if isinstance(value, bool):
        return "TRUE" if value else "FALSE"
    if isinstance(value, (int, float)):
        return repr(value)
    if isinstance(value, (date, datetime)):
        return f"'{value.isoformat()}'"
    escaped = str(value).replace("'", "''")
    return f"'{escaped}'"


# ── Predicates ───────────────────────────────────────────────────────────


class Comparison(BaseModel):
    """``column <operator> operand``."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["comparison"] = "comparison"
    column: ColumnRef
    operator: Operator
    operand: Operand | None = None

    @model_validator(mode="before")
    @classmethod
    def _normalize(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        op = data.get("operator")
        if isinstance(op, str):
            op = " ".join(op.upper().split())
            data["operator"] = _OPERATOR_ALIASES.get(op, op)
        # shorthand: {"column": ..., "operator": ..., "value": 42}
        if "value" in data and "operand" not in data:
            value = data.pop("value")
            if isinstance(value, list):
                value = tuple(value)
            data["operand"] = {"kind": "constant", "value": value}
        return data

    @model_validator(mode="after")
    def _check_operand(self) -> "Comparison":
        if self.operator.is_unary:
            if self.operand is not None:
                raise ValueError(f"{self.operator.value} takes no operand")
            return self
        if self.operand is None:
            raise ValueError(f"{self.operator.value} requires an operand")
        if isinstance(self.operand, Constant):
            value = self.operand.value
            if self.operator is Operator.BETWEEN and (
                not isinstance(value, tuple) or len(value) != 2
            ):
                raise ValueError("BETWEEN requires a pair of bounds")
            if self.operator is Operator.IN and not isinstance(value, tuple):
                raise ValueError("IN requires a list of values")
        return self

    @property
    def constant(self) -> Any:
        """The constant operand value, or None for non-constant operands."""
        return self.operand.value if isinstance(self.operand, Constant) else None

    @property
    def has_constant(self) -> bool:
        return isinstance(self.operand, Constant)

    def columns(self) -> Iterator[ColumnRef]:
        yield self.column
        if isinstance(self.operand, ColumnOperand):
            yield self.operand.column

    def to_sql(self, qualify: bool = True) -> str:
        left = self.column.to_sql(qualify)
        if self.operand is None:
            return f"{left} {self.operator.value}"
        if self.operator is Operator.BETWEEN and isinstance(self.operand, Constant):
            low, high = self.operand.value
            return f"{left} BETWEEN {_literal(low)} AND {_literal(high)}"
        return f"{left} {self.operator.value} {self.operand.to_sql(qualify)}"


class Conjunction(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["and"] = "and"
    items: tuple["Predicate", ...] = Field(..., min_length=1)

    def columns(self) -> Iterator[ColumnRef]:
        for item in self.items:
            yield from item.columns()

    def to_sql(self, qualify: bool = True) -> str:
        return " AND ".join(_parenthesize(i, qualify) for i in self.items)


class Disjunction(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["or"] = "or"
    items: tuple["Predicate", ...] = Field(..., min_length=2)

    def columns(self) -> Iterator[ColumnRef]:
        for item in self.items:
            yield from item.columns()

    def to_sql(self, qualify: bool = True) -> str:
        return " OR ".join(_parenthesize(i, qualify) for i in self.items)


class ExistenceMode(str, Enum):
    EXISTS = "exists"
    NOT_EXISTS = "not_exists"
    IN = "in"
    NOT_IN = "not_in"

    @property
    def negated(self) -> bool:
        return self in (ExistenceMode.NOT_EXISTS, ExistenceMode.NOT_IN)


class Existence(BaseModel):
    """
    A subquery test.

    ``column`` is the outer column for IN / NOT IN; ``subquery_column`` is
    the column the subquery selects. ``correlated`` subqueries reference the
    outer row and are re-evaluated per row unless the planner can turn them
    into a semi or anti join.
    """

    model_config = ConfigDict(frozen=True)

    kind: Literal["exists"] = "exists"
    mode: ExistenceMode
    relation: str = Field(..., description="Table the subquery reads")
    column: ColumnRef | None = None
    subquery_column: str | None = None
    correlated: bool = False

    @model_validator(mode="after")
    def _check_column(self) -> "Existence":
        if self.mode in (ExistenceMode.IN, ExistenceMode.NOT_IN) and self.column is None:
            raise ValueError(f"{self.mode.value} requires the outer column")
        return self

    def columns(self) -> Iterator[ColumnRef]:
        if self.column is not None:
            yield self.column

    def to_sql(self, qualify: bool = True) -> str:
        inner = self.subquery_column or "1"
        sub = f"(SELECT {inner} FROM {self.relation} ...)"
        if self.mode is ExistenceMode.EXISTS:
            return f"EXISTS {sub}"
        if self.mode is ExistenceMode.NOT_EXISTS:
            return f"NOT EXISTS {sub}"
        keyword = "IN" if self.mode is ExistenceMode.IN else "NOT IN"
        return f"{self.column.to_sql(qualify)} {keyword} {sub}"


class FunctionWrapped(BaseModel):
    """
    A comparison whose column side is wrapped in a function or expression.

    ``function`` names the wrapper (LOWER, DATE, COALESCE, CASE, CAST, or an
    arithmetic operator such as ``+``); ``expression`` is the wrapped text
    as written, used in messages.
    """

    model_config = ConfigDict(frozen=True)

    kind: Literal["function"] = "function"
    function: str = Field(..., min_length=1)
    inner: Comparison
    expression: str | None = None

    @property
    def wrapper(self) -> str:
        return self.function.upper()

    @property
    def is_arithmetic(self) -> bool:
        return self.function.strip() in ("+", "-", "*", "/", "%")

    def columns(self) -> Iterator[ColumnRef]:
        yield from self.inner.columns()

    def wrapped_sql(self, qualify: bool = True) -> str:
        if self.expression:
            return self.expression
        col = self.inner.column.to_sql(qualify)
        if self.is_arithmetic:
            return f"{col} {self.function.strip()} ..."
        return f"{self.wrapper}({col})"

    def to_sql(self, qualify: bool = True) -> str:
        rest = self.inner.to_sql(qualify)[len(self.inner.column.to_sql(qualify)):]
        return f"{self.wrapped_sql(qualify)}{rest}"


Predicate = Annotated[
    Union[Comparison, Conjunction, Disjunction, Existence, FunctionWrapped],
    Field(discriminator="kind"),
]

Conjunction.model_rebuild()
Disjunction.model_rebuild()


def _parenthesize(predicate: Any, qualify: bool) -> str:
    text = predicate.to_sql(qualify)
    if isinstance(predicate, (Conjunction, Disjunction)):
        return f"({text})"
    return text


# ── Helpers ──────────────────────────────────────────────────────────────


def conjuncts(predicate: Any) -> list[Any]:
    """Flatten nested ANDs into a list of conjuncts (empty for None)."""
    if predicate is None:
        return []
    if isinstance(predicate, Conjunction):
        result: list[Any] = []
        for item in predicate.items:
            result.extend(conjuncts(item))
        return result
    return [predicate]


def and_(*predicates: Any) -> Any:
    """Combine predicates with AND, dropping Nones; returns None when empty."""
    items: list[Any] = []
    for p in predicates:
        items.extend(conjuncts(p))
    if not items:
        return None
    if len(items) == 1:
        return items[0]
    return Conjunction(items=tuple(items))


def referenced_relations(predicate: Any) -> set[str | None]:
    return {c.relation for c in predicate.columns()}
