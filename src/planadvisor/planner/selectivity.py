"""
Selectivity estimation from column statistics.

Follows the PostgreSQL planner's estimators (selfuncs.c) closely enough
that the relative answers match:

- equality: most-common-value frequency, otherwise the remaining
  non-null, non-MCV mass spread evenly over the remaining distinct values
- ranges: linear interpolation between min_value and max_value
- prefix LIKE: FIXED_CHAR_SEL per fixed character
- AND: product of marginals (columns assumed independent)
- OR: inclusion-exclusion, s1 + s2 - s1*s2
- equi-join: 1 / max(distinct_left, distinct_right)

The independence assumption underestimates correlated conjunctions
(city = 'Paris' AND country = 'FR'). That is a known limitation, and the
advisor states it in the assumptions of the findings it produces.
"""

from __future__ import annotations

import math
from datetime import date, datetime
from typing import Any, Iterable

from planadvisor.query.predicates import (
    ColumnOperand,
    Comparison,
    Conjunction,
    Constant,
    Disjunction,
    Existence,
    Expression,
    FunctionWrapped,
    Operator,
)
from planadvisor.query.spec import JoinKind
from planadvisor.stats.models import Column, Table

DEFAULT_EQ_SEL = 0.005
DEFAULT_INEQ_SEL = 1.0 / 3.0
DEFAULT_RANGE_INEQ_SEL = 0.005
DEFAULT_MATCH_SEL = 0.005
DEFAULT_EXISTS_SEL = 0.5
FIXED_CHAR_SEL = 0.2


def clamp_probability(value: float) -> float:
    if math.isnan(value):
        return 0.0
    return min(1.0, max(0.0, value))


def clamp_row_estimate(rows: float) -> float:
    """At least one row; whole numbers above that (like clamp_row_est)."""
    if rows <= 1.0 or math.isnan(rows):
        return 1.0
    return float(round(rows))


def to_number(value: Any) -> float | None:
    """Map numbers and dates (or ISO date strings) onto a number line."""
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, datetime):
        return value.timestamp() / 86400.0
    if isinstance(value, date):
        return float(value.toordinal())
    if isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value)
        except ValueError:
            return None
        if len(value) <= 10:
            return float(parsed.date().toordinal())
        return parsed.timestamp() / 86400.0
    return None


def _like_prefix(pattern: str) -> str:
    for i, ch in enumerate(pattern):
        if ch in ("%", "_"):
            return pattern[:i]
    return pattern


class SelectivityEstimator:
    """Selectivity of predicates over one table."""

    def __init__(self, table: Table) -> None:
        self.table = table

    def selectivity(self, predicate: Any) -> float:
        if predicate is None:
            return 1.0
        if isinstance(predicate, Conjunction):
            return self.conjunction(predicate.items)
        if isinstance(predicate, Disjunction):
            return self.disjunction(predicate.items)
        if isinstance(predicate, Existence):
            return DEFAULT_EXISTS_SEL
        if isinstance(predicate, FunctionWrapped):
            return self._wrapped(predicate)
        return self._comparison(predicate)

    def conjunction(self, predicates: Iterable[Any]) -> float:
        result = 1.0
        for p in predicates:
            result *= self.selectivity(p)
        return clamp_probability(result)

    def disjunction(self, predicates: Iterable[Any]) -> float:
        result = 0.0
        for p in predicates:
            s = self.selectivity(p)
            result = result + s - result * s
        return clamp_probability(result)

    def rows(self, predicates: Iterable[Any]) -> float:
        return clamp_row_estimate(self.table.row_count * self.conjunction(predicates))

    # ── Comparisons ──────────────────────────────────────────────────────

    def _wrapped(self, predicate: FunctionWrapped) -> float:
        op = predicate.inner.operator
        if op in (Operator.EQ, Operator.IN):
            return DEFAULT_EQ_SEL
        if op is Operator.BETWEEN:
            return DEFAULT_RANGE_INEQ_SEL
        if op is Operator.NE:
            return 1.0 - DEFAULT_EQ_SEL
        return DEFAULT_INEQ_SEL

    def _comparison(self, cmp: Comparison) -> float:
        column = self.table.column(cmp.column.column)
        op = cmp.operator
        not_null = 1.0 - column.null_frac

        if op is Operator.IS_NULL:
            return column.null_frac
        if op is Operator.IS_NOT_NULL:
            return not_null

        if isinstance(cmp.operand, ColumnOperand) or (
            isinstance(cmp.operand, Expression) and cmp.operand.correlated
        ):
            return DEFAULT_EQ_SEL if op is Operator.EQ else DEFAULT_INEQ_SEL

        if op is Operator.EQ:
            return self.equality(column, cmp.constant, known=isinstance(cmp.operand, Constant))
        if op is Operator.NE:
            eq = self.equality(column, cmp.constant, known=isinstance(cmp.operand, Constant))
            return clamp_probability(not_null - eq)
        if op is Operator.IN:
            values = cmp.constant if isinstance(cmp.constant, tuple) else (cmp.constant,)
            if not isinstance(cmp.operand, Constant):
                return clamp_probability(DEFAULT_EQ_SEL * 10)
            total = sum(self.equality(column, v) for v in values)
            return clamp_probability(min(total, not_null))
        if op in (Operator.LIKE, Operator.ILIKE, Operator.NOT_LIKE):
            sel = self.like(column, cmp.constant)
            return clamp_probability(not_null - sel) if op is Operator.NOT_LIKE else sel
        if op is Operator.BETWEEN:
            if not isinstance(cmp.operand, Constant):
                return DEFAULT_RANGE_INEQ_SEL
            low, high = cmp.constant
            return self.between(column, low, high)
        return self.inequality(column, op, cmp.constant if isinstance(cmp.operand, Constant) else None)

    def equality(self, column: Column, value: Any, known: bool = True) -> float:
        """Selectivity of ``column = value``; unknown values average over non-null rows."""
        distinct = self.table.distinct_values(column.name)
        not_null = 1.0 - column.null_frac
        if not known:
            return clamp_probability(not_null / distinct)
        if value is None:
            return 0.0
        freq = column.mcv_frequency(value)
        if freq is not None:
            return freq
        remaining_mass = not_null - column.mcv_total
        remaining_distinct = distinct - len(column.most_common_values)
        if remaining_distinct <= 0 or remaining_mass <= 0:
            # every value is an MCV and this one is not among them
            return clamp_probability(min(DEFAULT_EQ_SEL, 1.0 / max(self.table.row_count, 1)))
        return clamp_probability(min(remaining_mass / remaining_distinct, remaining_mass))

    def _fraction_below(self, column: Column, value: Any) -> float | None:
        low = to_number(column.min_value)
        high = to_number(column.max_value)
        point = to_number(value)
        if low is None or high is None or point is None:
            return None
        if high <= low:
            return 0.0 if point < low else 1.0
        return clamp_probability((point - low) / (high - low))

    def inequality(self, column: Column, op: Operator, value: Any) -> float:
        fraction = self._fraction_below(column, value) if value is not None else None
        if fraction is None:
            return DEFAULT_INEQ_SEL
        not_null = 1.0 - column.null_frac
        if op in (Operator.LT, Operator.LE):
            return clamp_probability(fraction * not_null)
        return clamp_probability((1.0 - fraction) * not_null)

    def between(self, column: Column, low: Any, high: Any) -> float:
        below_high = self._fraction_below(column, high)
        below_low = self._fraction_below(column, low)
        if below_high is None or below_low is None:
            return DEFAULT_RANGE_INEQ_SEL
        not_null = 1.0 - column.null_frac
        return clamp_probability((below_high - below_low) * not_null)

    def like(self, column: Column, pattern: Any) -> float:
        if not isinstance(pattern, str):
            return DEFAULT_MATCH_SEL
        if not any(w in pattern for w in ("%", "_")):
            return self.equality(column, pattern)
        distinct = self.table.distinct_values(column.name)
        floor = 1.0 / distinct
        prefix = _like_prefix(pattern)
        if prefix:
            sel = FIXED_CHAR_SEL ** len(prefix)
        else:
            fixed = sum(1 for ch in pattern if ch not in ("%", "_"))
            sel = FIXED_CHAR_SEL ** fixed if fixed else 1.0
        return clamp_probability(max(sel, floor) * (1.0 - column.null_frac))


# ── Joins ────────────────────────────────────────────────────────────────


def equijoin_selectivity(
    left_table: Table, left_column: str, right_table: Table, right_column: str
) -> float:
    """1 / max(ndv_left, ndv_right), scaled by both sides' non-null fractions."""
    left = left_table.column(left_column)
    right = right_table.column(right_column)
    nd = max(left_table.distinct_values(left_column), right_table.distinct_values(right_column))
    return clamp_probability((1.0 - left.null_frac) * (1.0 - right.null_frac) / nd)


def join_rows(outer_rows: float, inner_rows: float, kind: JoinKind, selectivity: float) -> float:
    """Output cardinality of a join, clamped the way PostgreSQL clamps it."""
    matched = outer_rows * inner_rows * selectivity
    if kind is JoinKind.INNER:
        rows = matched
    elif kind in (JoinKind.LEFT, JoinKind.RIGHT):
        rows = max(matched, outer_rows)
    elif kind is JoinKind.FULL:
        rows = max(matched, outer_rows, inner_rows)
    elif kind is JoinKind.SEMI:
        rows = outer_rows * min(1.0, selectivity * inner_rows)
    else:
        rows = outer_rows * (1.0 - min(1.0, selectivity * inner_rows))
    return clamp_row_estimate(rows)
