"""
Predicate classification: can this predicate drive a seek on this index?

The result is either Sargable (how many leading key columns the
predicates bind, and how) or NonSargable (with a reason code and a
human-readable detail that ends up in findings).

Binding rules for a multi-column key, in key order:
    - equality predicates (=, IN, IS NULL, wildcard-free LIKE) bind a
      key column and let the next column be bound too
    - the first range predicate (<, <=, >, >=, BETWEEN, prefix LIKE)
      binds its column and ends the seek prefix
    - an OR binds a prefix only when every branch binds the same number
      of key columns with the same access kind
    - everything else is a residual filter applied after the seek
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterable, Sequence

from planadvisor.query.predicates import (
    ColumnOperand,
    ColumnRef,
    Comparison,
    Conjunction,
    Constant,
    Disjunction,
    Existence,
    Expression,
    FunctionWrapped,
    Operator,
    conjuncts,
)
from planadvisor.stats.models import Index, Table

logger = logging.getLogger(__name__)

LIKE_WILDCARDS = ("%", "_")


class AccessKind(str, Enum):
    EQUALITY = "equality"
    RANGE = "range"
    PREFIX_LIKE = "prefix_like"


class NonSargableReason(str, Enum):
    FUNCTION_ON_COLUMN = "function_on_column"
    LEADING_WILDCARD = "leading_wildcard"
    NON_CONSTANT_PATTERN = "non_constant_pattern"
    NEGATED_OPERATOR = "negated_operator"
    ROW_DEPENDENT_OPERAND = "row_dependent_operand"
    TYPE_COERCION = "type_coercion"
    MIXED_DISJUNCTION = "mixed_disjunction"
    SUBQUERY = "subquery"
    NOT_INDEX_PREFIX = "not_index_prefix"
    PARTIAL_INDEX_NOT_IMPLIED = "partial_index_not_implied"
    NO_PREDICATE = "no_predicate"

    @property
    def is_intrinsic(self) -> bool:
        """Reasons that hold for every index, not just the one examined."""
        return self not in (
            NonSargableReason.NOT_INDEX_PREFIX,
            NonSargableReason.PARTIAL_INDEX_NOT_IMPLIED,
            NonSargableReason.NO_PREDICATE,
        )


@dataclass(frozen=True)
class Sargable:
    """
    Predicates that bind a leading prefix of an index key.

    Attributes:
        index: The index examined.
        key_prefix_length: Number of leading key columns bound.
        access_kind: How the last bound column is bound.
        bound: Predicates consumed by the seek (plus partial-index
            conditions the query implies).
        residual: Predicates left to filter rows after the seek.
        equality_columns: Key columns bound by equality.
    """

    index: Index
    key_prefix_length: int
    access_kind: AccessKind
    bound: tuple[Any, ...] = ()
    residual: tuple[Any, ...] = ()
    equality_columns: tuple[str, ...] = ()

    @property
    def is_sargable(self) -> bool:
        return True

    @property
    def bound_columns(self) -> tuple[str, ...]:
        return self.index.columns[: self.key_prefix_length]


@dataclass(frozen=True)
class NonSargable:
    """A predicate (or set of predicates) that cannot drive a seek."""

    reason: NonSargableReason
    detail: str
    predicate: Any = field(default=None, compare=False)

    @property
    def is_sargable(self) -> bool:
        return False


Classification = Sargable | NonSargable


def parameter(column: ColumnRef, source: str) -> Comparison:
    """An equality against a value supplied per probe (nested loop inner side)."""
    return Comparison(
        column=column,
        operator=Operator.EQ,
        operand=Expression(text=source, correlated=False),
    )


class PredicateClassifier:
    """
    Classifies predicates of one relation against that relation's indexes.

    Example:
        classifier = PredicateClassifier(orders)
        result = classifier.classify(where, orders.index("ix_status_date"))
        if result.is_sargable:
            result.key_prefix_length
    """

    def __init__(self, table: Table, relation: str | None = None) -> None:
        self.table = table
        self.relation = relation

    # ── Single predicates ────────────────────────────────────────────────

    def assess(self, predicate: Any) -> AccessKind | NonSargable:
        """
        Classify one predicate independently of any index.

        Returns the access kind it would provide on an index leading with
        its column, or NonSargable when no index can use it.
        """
        if isinstance(predicate, FunctionWrapped):
            self._check_column(predicate.inner.column)
            return self._wrapped(predicate)
        if isinstance(predicate, Existence):
            return NonSargable(
                NonSargableReason.SUBQUERY,
                f"{predicate.mode.value.upper().replace('_', ' ')} subquery is evaluated "
                f"as a semi/anti join, not an index condition",
                predicate,
            )
        if isinstance(predicate, Disjunction):
            return self._assess_disjunction(predicate)
        if isinstance(predicate, Conjunction):
            kinds = [self.assess(p) for p in predicate.items]
            for kind in kinds:
                if isinstance(kind, NonSargable):
                    return kind
            return AccessKind.RANGE if AccessKind.RANGE in kinds else kinds[0]
        return self._assess_comparison(predicate)

    def _wrapped(self, predicate: FunctionWrapped) -> NonSargable:
        wrapped = predicate.wrapped_sql()
        name = predicate.wrapper
        if name == "COALESCE":
            detail = f"{wrapped} hides the column from the index; the NULL case needs its own OR branch"
        elif name == "CASE":
            detail = f"CASE expression {wrapped} on the column cannot be searched in an index"
        elif name in ("CAST", "::"):
            detail = f"cast {wrapped} converts every row before comparing"
        elif predicate.is_arithmetic:
            detail = f"arithmetic {wrapped} on the column; move the arithmetic to the constant side"
        else:
            detail = f"function {wrapped} is applied to the column for every row"
        return NonSargable(NonSargableReason.FUNCTION_ON_COLUMN, detail, predicate)

    def _assess_comparison(self, cmp: Comparison) -> AccessKind | NonSargable:
        column = self._check_column(cmp.column)
        op = cmp.operator

        if isinstance(cmp.operand, Expression) and cmp.operand.correlated:
            return NonSargable(
                NonSargableReason.ROW_DEPENDENT_OPERAND,
                f"{cmp.to_sql()} compares against a value that changes per row",
                cmp,
            )
        if isinstance(cmp.operand, ColumnOperand):
            other = cmp.operand.column
            if other.relation is None or other.relation == cmp.column.relation:
                return NonSargable(
                    NonSargableReason.ROW_DEPENDENT_OPERAND,
                    f"{cmp.to_sql()} compares two columns of the same row",
                    cmp,
                )

        if op in (Operator.NE, Operator.IS_NOT_NULL, Operator.NOT_LIKE):
            return NonSargable(
                NonSargableReason.NEGATED_OPERATOR,
                f"operator {op.value} cannot bound an index seek",
                cmp,
            )
        if op is Operator.ILIKE:
            return NonSargable(
                NonSargableReason.FUNCTION_ON_COLUMN,
                f"{cmp.to_sql()} is a case-insensitive match, a plain B-tree cannot serve it",
                cmp,
            )

        if column.is_text and isinstance(cmp.operand, Constant):
            values = cmp.constant if isinstance(cmp.constant, tuple) else (cmp.constant,)
            if any(isinstance(v, (int, float)) and not isinstance(v, bool) for v in values):
                return NonSargable(
                    NonSargableReason.TYPE_COERCION,
                    f"{cmp.column} is {column.data_type} but is compared to a number; "
                    f"the implicit cast applies to the column",
                    cmp,
                )

        if op is Operator.LIKE:
            return self._assess_like(cmp)
        if op in (Operator.EQ, Operator.IN, Operator.IS_NULL):
            return AccessKind.EQUALITY
        return AccessKind.RANGE

    def _assess_like(self, cmp: Comparison) -> AccessKind | NonSargable:
        pattern = cmp.constant
        if not isinstance(pattern, str):
            if isinstance(cmp.operand, Constant):
                return AccessKind.EQUALITY
            return NonSargable(
                NonSargableReason.NON_CONSTANT_PATTERN,
                f"pattern of {cmp.to_sql()} is unknown at plan time",
                cmp,
            )
        if pattern[:1] in LIKE_WILDCARDS:
            return NonSargable(
                NonSargableReason.LEADING_WILDCARD,
                f"LIKE '{pattern}' starts with a wildcard, so no key range can be derived",
                cmp,
            )
        if not any(w in pattern for w in LIKE_WILDCARDS):
            return AccessKind.EQUALITY
        return AccessKind.PREFIX_LIKE

    def _assess_disjunction(self, predicate: Disjunction) -> AccessKind | NonSargable:
        kinds = [self.assess(branch) for branch in predicate.items]
        for kind in kinds:
            if isinstance(kind, NonSargable):
                return NonSargable(
                    NonSargableReason.MIXED_DISJUNCTION,
                    f"OR branch is not index-seekable: {kind.detail}",
                    predicate,
                )
        columns = {frozenset(c.column for c in b.columns()) for b in predicate.items}
        if len(columns) != 1:
            return NonSargable(
                NonSargableReason.MIXED_DISJUNCTION,
                "OR across different columns needs a bitmap OR or a UNION ALL rewrite",
                predicate,
            )
        if all(k is AccessKind.EQUALITY for k in kinds):
            return AccessKind.EQUALITY
        return AccessKind.RANGE

    def _classify_disjunction(self, predicate: Disjunction, index: Index, context: Sequence[Any]) -> Classification:
        """
        An OR seeks ``index`` only when every branch, together with the
        other conjuncts in ``context``, binds the same prefix the same way.
        """
        results = [self.classify(conjuncts(branch) + list(context), index) for branch in predicate.items]
        for result in results:
            if isinstance(result, NonSargable):
                return NonSargable(
                    NonSargableReason.MIXED_DISJUNCTION,
                    f"OR branch cannot seek {index.name}: {result.detail}",
                    predicate,
                )
        shapes = {(r.key_prefix_length, r.access_kind) for r in results}
        if len(shapes) != 1:
            return NonSargable(
                NonSargableReason.MIXED_DISJUNCTION,
                f"OR branches bind {index.name} with different prefixes or access kinds",
                predicate,
            )
        first = results[0]
        bound_ids = {id(p) for r in results for p in r.bound}
        context_ids = {id(p) for p in context}
        shared = tuple(p for p in context if id(p) in bound_ids)
        # branch conditions left after the seek mean the OR is rechecked per row
        recheck = any(id(p) not in context_ids for r in results for p in r.residual)
        return Sargable(
            index=index,
            key_prefix_length=first.key_prefix_length,
            access_kind=first.access_kind,
            bound=(predicate,) + shared,
            residual=(predicate,) if recheck else (),
            equality_columns=first.equality_columns,
        )

    def _single_column(self, predicate: Any) -> str | None:
        columns = {c.column for c in predicate.columns()}
        return columns.pop() if len(columns) == 1 else None

    def _check_column(self, ref: ColumnRef) -> Any:
        # raises UnknownColumnError
        return self.table.column(ref.column)

    # ── Against an index ─────────────────────────────────────────────────

    def classify(
        self,
        predicates: Any,
        index: Index,
        *,
        parameters: Sequence[Comparison] = (),
    ) -> Classification:
        """
        Classify a predicate (or list of conjuncts) against ``index``.

        ``parameters`` are equality conditions whose values arrive per probe
        (join keys of a parameterized nested loop); they bind key columns
        like constants do.
        """
        items = self._conjunct_list(predicates) + list(parameters)
        if not items:
            return NonSargable(NonSargableReason.NO_PREDICATE, "no predicate to seek with")

        implied: list[Any] = []
        if index.predicate is not None:
            implied = self._implied_conditions(items, index)
            if implied is None:
                return NonSargable(
                    NonSargableReason.PARTIAL_INDEX_NOT_IMPLIED,
                    f"partial index {index.name} only covers rows where "
                    f"{index.predicate.to_sql(qualify=False)}",
                )

        disjunctions = [p for p in items if isinstance(p, Disjunction)]
        assessed = [(p, self.assess(p)) for p in items]
        by_column: dict[str, list[tuple[Any, AccessKind]]] = {}
        first_failure: NonSargable | None = None
        for p, kind in assessed:
            if isinstance(kind, NonSargable):
                first_failure = first_failure or kind
                continue
            column = self._single_column(p)
            if column is not None and not isinstance(p, Disjunction):
                by_column.setdefault(column, []).append((p, kind))

        bound: list[Any] = []
        equality_columns: list[str] = []
        access_kind: AccessKind | None = None
        prefix = 0
        for key_column in index.columns:
            candidates = by_column.get(key_column, [])
            equalities = [p for p, k in candidates if k is AccessKind.EQUALITY]
            if equalities:
                bound.extend(equalities)
                equality_columns.append(key_column)
                access_kind = AccessKind.EQUALITY
                prefix += 1
                continue
            ranges = [(p, k) for p, k in candidates if k is not AccessKind.EQUALITY]
            if ranges:
                bound.extend(p for p, _ in ranges)
                access_kind = (
                    AccessKind.PREFIX_LIKE
                    if all(k is AccessKind.PREFIX_LIKE for _, k in ranges)
                    else AccessKind.RANGE
                )
                prefix += 1
            break

        recheck: tuple[Any, ...] = ()
        disjunction_failure: NonSargable | None = None
        context = [p for p in items if not isinstance(p, Disjunction)]
        implied_ids = {id(p) for p in implied}
        for d in disjunctions:
            seek = self._classify_disjunction(d, index, context)
            if isinstance(seek, NonSargable):
                disjunction_failure = disjunction_failure or seek
            elif seek.key_prefix_length > prefix:
                prefix, access_kind = seek.key_prefix_length, seek.access_kind
                bound = [p for p in seek.bound if id(p) not in implied_ids]
                equality_columns = list(seek.equality_columns)
                recheck = seek.residual

        if prefix == 0 or access_kind is None:
            if first_failure is not None and first_failure.reason.is_intrinsic:
                return first_failure
            if disjunction_failure is not None:
                return disjunction_failure
            return NonSargable(
                NonSargableReason.NOT_INDEX_PREFIX,
                f"no usable predicate on leading column {index.leading_column} of {index.name}",
            )

        bound_ids = {id(p) for p in bound}
        residual = recheck + tuple(p for p in items if id(p) not in bound_ids and id(p) not in implied_ids)
        logger.debug(
            "%s: %d key columns bound (%s), %d residual",
            index.name,
            prefix,
            access_kind.value,
            len(residual),
        )
        return Sargable(
            index=index,
            key_prefix_length=prefix,
            access_kind=access_kind,
            bound=tuple(bound) + tuple(implied),
            residual=residual,
            equality_columns=tuple(equality_columns),
        )

    def classify_all(self, predicates: Any, indexes: Iterable[Index] | None = None) -> dict[str, Classification]:
        """Classification per index name."""
        chosen = self.table.indexes if indexes is None else tuple(indexes)
        return {index.name: self.classify(predicates, index) for index in chosen}

    def bitmap_union_candidates(
        self,
        disjunction: Disjunction,
        indexes: Iterable[Index] | None = None,
    ) -> tuple[Sargable, ...] | None:
        """
        Per-branch index seeks whose bitmaps can be OR-ed together.

        Returns None unless every branch is seekable on some index and the
        branches need at least two different indexes (a single index is
        handled by ordinary classification of the disjunction).
        """
        chosen = self.table.indexes if indexes is None else tuple(indexes)
        picks: list[Sargable] = []
        for branch in disjunction.items:
            best: Sargable | None = None
            for index in chosen:
                if index.predicate is not None:
                    continue
                result = self.classify(branch, index)
                if isinstance(result, Sargable) and (
                    best is None
                    or (result.key_prefix_length, -len(result.index.columns))
                    > (best.key_prefix_length, -len(best.index.columns))
                ):
                    best = result
            if best is None:
                return None
            picks.append(best)
        if len({p.index.name for p in picks}) < 2:
            return None
        return tuple(picks)

    def non_sargable(self, predicates: Any) -> list[NonSargable]:
        """Conjuncts that no index could ever serve, with their reasons."""
        found = []
        for p in self._conjunct_list(predicates):
            kind = self.assess(p)
            if isinstance(kind, NonSargable) and kind.reason.is_intrinsic:
                found.append(kind)
        return found

    # ── Helpers ──────────────────────────────────────────────────────────

    @staticmethod
    def _conjunct_list(predicates: Any) -> list[Any]:
        if predicates is None:
            return []
        if isinstance(predicates, (list, tuple)):
            items: list[Any] = []
            for p in predicates:
                items.extend(conjuncts(p))
            return items
        return conjuncts(predicates)

    @staticmethod
    def _implied_conditions(items: list[Any], index: Index) -> list[Any] | None:
        """
        Query conjuncts matching each conjunct of a partial index predicate,
        or None if some index condition is not implied by the query.
        """
        by_text = {p.to_sql(qualify=False): p for p in items}
        implied = []
        for condition in conjuncts(index.predicate):
            match = by_text.get(condition.to_sql(qualify=False))
            if match is None:
                return None
            implied.append(match)
        return implied
