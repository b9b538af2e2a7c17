"""
The normalized query the advisor analyzes.

A QuerySpec names its relations, the WHERE predicate, the join edges in
the order they were written, the projected columns and ordering/paging.
When a query has more than one relation, every column reference must be
qualified by a relation key (the alias, or the table name when there is
no alias).
"""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator

from planadvisor.query.predicates import (
    ColumnOperand,
    ColumnRef,
    Comparison,
    Conjunction,
    Operator,
    Predicate,
    and_,
    conjuncts,
)


class RelationRef(BaseModel):
    """A table occurrence in FROM, with an optional alias."""

    model_config = ConfigDict(frozen=True)

    table: str = Field(..., min_length=1)
    alias: str | None = None

    @model_validator(mode="before")
    @classmethod
    def _parse_string(cls, data: Any) -> Any:
        # "orders" or "orders o" / "orders AS o"
        if isinstance(data, str):
            parts = [p for p in data.split() if p.upper() != "AS"]
            if len(parts) == 1:
                return {"table": parts[0]}
            if len(parts) == 2:
                return {"table": parts[0], "alias": parts[1]}
            raise ValueError(f"cannot parse relation {data!r}")
        return data

    @property
    def key(self) -> str:
        return self.alias or self.table

    def __str__(self) -> str:
        return f"{self.table} {self.alias}" if self.alias else self.table


class JoinKind(str, Enum):
    INNER = "inner"
    LEFT = "left"
    RIGHT = "right"
    FULL = "full"
    SEMI = "semi"
    ANTI = "anti"

    @property
    def preserves_left(self) -> bool:
        return self in (JoinKind.LEFT, JoinKind.FULL)

    @property
    def is_symmetric(self) -> bool:
        return self in (JoinKind.INNER, JoinKind.FULL)


class JoinEdge(BaseModel):
    """
    A join between two relations.

    ``on`` is accepted as shorthand for an equality conjunction:
        {"left": "o", "right": "c", "on": [["o.customer_id", "c.id"]]}

    RIGHT joins are normalized to LEFT joins with the sides swapped.
    """

    model_config = ConfigDict(frozen=True)

    left: str
    right: str
    kind: JoinKind = JoinKind.INNER
    condition: Predicate | None = None

    @model_validator(mode="before")
    @classmethod
    def _normalize(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        pairs = data.pop("on", None)
        if pairs is not None and data.get("condition") is None:
            comparisons = [
                {
                    "kind": "comparison",
                    "column": left,
                    "operator": "=",
                    "operand": {"kind": "column", "column": right},
                }
                for left, right in pairs
            ]
            data["condition"] = (
                comparisons[0]
                if len(comparisons) == 1
                else {"kind": "and", "items": comparisons}
            )
        kind = data.get("kind")
        if kind == JoinKind.RIGHT or (isinstance(kind, str) and kind.lower() == "right"):
            data["left"], data["right"] = data["right"], data["left"]
            data["kind"] = JoinKind.LEFT
        elif isinstance(kind, str):
            data["kind"] = kind.lower()
        return data

    @property
    def relations(self) -> frozenset[str]:
        return frozenset((self.left, self.right))

    @property
    def equi_keys(self) -> list[tuple[ColumnRef, ColumnRef]]:
        """
        Column pairs compared with ``=``, oriented (left side, right side).
        """
        keys: list[tuple[ColumnRef, ColumnRef]] = []
        for item in conjuncts(self.condition):
            if not (
                isinstance(item, Comparison)
                and item.operator is Operator.EQ
                and isinstance(item.operand, ColumnOperand)
            ):
                continue
            a, b = item.column, item.operand.column
            if a.relation == self.left and b.relation == self.right:
                keys.append((a, b))
            elif a.relation == self.right and b.relation == self.left:
                keys.append((b, a))
        return keys

    @property
    def is_equijoin(self) -> bool:
        return bool(self.equi_keys)

    @property
    def other_conditions(self) -> list[Any]:
        """Conjuncts of the condition that are not equi-join keys."""
        equi = {id(c) for c in self._equi_comparisons()}
        return [c for c in conjuncts(self.condition) if id(c) not in equi]

    def _equi_comparisons(self) -> list[Comparison]:
        found = []
        for item in conjuncts(self.condition):
            if (
                isinstance(item, Comparison)
                and item.operator is Operator.EQ
                and isinstance(item.operand, ColumnOperand)
                and {item.column.relation, item.operand.column.relation} == set(self.relations)
            ):
                found.append(item)
        return found

    def describe(self) -> str:
        on = f" ON {self.condition.to_sql()}" if self.condition is not None else ""
        return f"{self.left} {self.kind.value.upper()} JOIN {self.right}{on}"


class OrderItem(BaseModel):
    model_config = ConfigDict(frozen=True)

    column: ColumnRef
    descending: bool = False

    @model_validator(mode="before")
    @classmethod
    def _parse_string(cls, data: Any) -> Any:
        # "o.created_at DESC"
        if isinstance(data, str):
            parts = data.split()
            descending = len(parts) > 1 and parts[1].upper() == "DESC"
            return {"column": parts[0], "descending": descending}
        return data

    def to_sql(self) -> str:
        return f"{self.column}{' DESC' if self.descending else ''}"


class QuerySpec(BaseModel):
    """A normalized query: what the advisor plans and reviews."""

    model_config = ConfigDict(frozen=True)

    name: str = "query"
    relations: tuple[RelationRef, ...] = Field(..., min_length=1)
    select: tuple[ColumnRef, ...] = Field(
        default_factory=tuple,
        description="Projected columns; empty or '*' means every column",
    )
    where: Predicate | None = None
    joins: tuple[JoinEdge, ...] = Field(default_factory=tuple)
    order_by: tuple[OrderItem, ...] = Field(default_factory=tuple)
    limit: int | None = Field(default=None, ge=0)
    offset: int | None = Field(default=None, ge=0)

    @model_validator(mode="after")
    def _check_references(self) -> "QuerySpec":
        keys = [r.key for r in self.relations]
        if len(keys) != len(set(keys)):
            raise ValueError("relation keys (aliases) must be unique")
        known = set(keys)
        multi = len(keys) > 1

        def check(ref: ColumnRef, where: str) -> None:
            if ref.relation is None:
                if multi and not ref.is_star:
                    raise ValueError(
                        f"column {ref.column} in {where} must be qualified: "
                        f"the query has several relations"
                    )
            elif ref.relation not in known:
                raise ValueError(f"{where} references unknown relation {ref.relation!r}")

        for ref in self.select:
            check(ref, "select")
        if self.where is not None:
            for ref in self.where.columns():
                check(ref, "where")
        for item in self.order_by:
            check(item.column, "order_by")
        for edge in self.joins:
            for side in (edge.left, edge.right):
                if side not in known:
                    raise ValueError(f"join references unknown relation {side!r}")
            if edge.left == edge.right:
                raise ValueError("a join edge must connect two different relations")
            if edge.condition is not None:
                for ref in edge.condition.columns():
                    check(ref, "join condition")
        return self

    @property
    def relation_keys(self) -> list[str]:
        return [r.key for r in self.relations]

    @property
    def selects_all(self) -> bool:
        return not self.select or any(c.is_star and c.relation is None for c in self.select)

    def relation(self, key: str) -> RelationRef:
        for rel in self.relations:
            if rel.key == key:
                return rel
        raise KeyError(key)

    def relation_of(self, ref: ColumnRef) -> str:
        """The relation key a column reference belongs to."""
        if ref.relation is not None:
            return ref.relation
        return self.relations[0].key

    def local_predicates(self, key: str) -> list[Any]:
        """WHERE conjuncts that reference only relation ``key``."""
        local = []
        for item in conjuncts(self.where):
            rels = {self.relation_of(c) for c in item.columns()}
            if rels == {key} or (not rels and len(self.relations) == 1):
                local.append(item)
        return local

    def cross_predicates(self) -> list[Any]:
        """WHERE conjuncts that reference more than one relation."""
        return [
            item
            for item in conjuncts(self.where)
            if len({self.relation_of(c) for c in item.columns()}) > 1
        ]

    def join_edges(self) -> list[JoinEdge]:
        """
        Explicit joins followed by implicit inner joins.

        A WHERE conjunct comparing columns of two relations that no
        explicit join connects becomes an implicit inner join edge. One
        whose relations an explicit join already connects is added to
        that join's condition.
        """
        explicit = {e.relations: i for i, e in enumerate(self.joins)}
        extra: dict[int, list[Any]] = {}
        implicit: dict[frozenset[str], list[Any]] = {}
        order: list[tuple[str, str]] = []
        for item in self.cross_predicates():
            rels = sorted(
                {self.relation_of(c) for c in item.columns()},
                key=self.relation_keys.index,
            )
            if len(rels) != 2:
                continue
            pair = frozenset(rels)
            if pair in explicit:
                extra.setdefault(explicit[pair], []).append(item)
                continue
            if pair not in implicit:
                implicit[pair] = []
                order.append((rels[0], rels[1]))
            implicit[pair].append(item)
        edges = [
            e.model_copy(update={"condition": and_(e.condition, *extra[i])}) if i in extra else e
            for i, e in enumerate(self.joins)
        ]
        for left, right in order:
            items = implicit[frozenset((left, right))]
            condition = items[0] if len(items) == 1 else Conjunction(items=tuple(items))
            edges.append(JoinEdge(left=left, right=right, condition=condition))
        return edges

    def columns_for(self, key: str) -> set[str] | None:
        """
        Columns of relation ``key`` the query touches anywhere.

        Returns None when the query projects every column of the relation.
        """
        if self.selects_all:
            return None
        used: set[str] = set()
        for ref in self.select:
            if self.relation_of(ref) == key:
                if ref.is_star:
                    return None
                used.add(ref.column)
        refs: list[ColumnRef] = []
        if self.where is not None:
            refs.extend(self.where.columns())
        for edge in self.joins:
            if edge.condition is not None:
                refs.extend(edge.condition.columns())
        refs.extend(item.column for item in self.order_by)
        used.update(r.column for r in refs if self.relation_of(r) == key)
        return used

    def to_sql(self) -> str:
        """An approximate SQL rendering, for reports."""
        select = ", ".join(str(c) for c in self.select) if self.select else "*"
        sql = f"SELECT {select} FROM {self.relations[0]}"
        joined = {self.relations[0].key}
        for edge in self.joins:
            other = edge.right if edge.left in joined else edge.left
            joined.add(other)
            on = f" ON {edge.condition.to_sql()}" if edge.condition is not None else ""
            sql += f" {edge.kind.value.upper()} JOIN {self.relation(other)}{on}"
        for rel in self.relations[1:]:
            if rel.key not in joined:
                sql += f", {rel}"
        if self.where is not None:
            sql += f" WHERE {self.where.to_sql()}"
        if self.order_by:
            sql += " ORDER BY " + ", ".join(o.to_sql() for o in self.order_by)
        if self.limit is not None:
            sql += f" LIMIT {self.limit}"
        if self.offset is not None:
            sql += f" OFFSET {self.offset}"
        return sql

