"""
Statistics models: what the advisor knows about tables, columns and indexes.

All models are frozen. A changed table (new index, refreshed counts) is a new
instance, which is what lets the store hand out immutable snapshots.

Column.n_distinct follows the pg_stats convention:
    > 0   absolute number of distinct non-null values
    < 0   minus the fraction of rows that are distinct (-1.0 = unique)
    = 0   unknown
"""

from __future__ import annotations

import math
from datetime import date, datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from planadvisor.exceptions import UnknownColumnError
from planadvisor.query.predicates import Predicate

MAX_MCV_ENTRIES = 100
DEFAULT_NUM_DISTINCT = 200

TEXT_TYPES = ("char", "text", "clob", "string", "varchar", "citext", "uuid")
NUMERIC_TYPES = (
    "int", "serial", "numeric", "decimal", "real", "double", "float", "money",
)

Bound = int | float | date | datetime | str


def _type_matches(data_type: str, families: tuple[str, ...]) -> bool:
    lowered = data_type.lower()
    return any(f in lowered for f in families)


class Column(BaseModel):
    """Per-column statistics, modelled on pg_stats."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(..., min_length=1)
    data_type: str = Field(default="text", description="Declared SQL type")
    null_frac: float = Field(default=0.0, ge=0.0, le=1.0)
    n_distinct: float = Field(default=0.0, description="Distinct values (negative = ratio of rows)")
    most_common_values: dict[str, float] = Field(
        default_factory=dict,
        description="Most common values and their frequencies (keys in string form)",
    )
    min_value: Bound | None = None
    max_value: Bound | None = None
    avg_width: int = Field(default=8, ge=1, description="Average stored width in bytes")
    correlation: float = Field(default=0.0, ge=-1.0, le=1.0)
    references: str | None = Field(
        default=None,
        description="Foreign key target as 'table.column'",
    )

    @field_validator("most_common_values", mode="before")
    @classmethod
    def _stringify_mcv_keys(cls, value: Any) -> Any:
        if isinstance(value, dict):
            return {mcv_key(k): v for k, v in value.items()}
        return value

    @field_validator("most_common_values")
    @classmethod
    def _check_mcv(cls, value: dict[str, float]) -> dict[str, float]:
        if len(value) > MAX_MCV_ENTRIES:
            raise ValueError(f"at most {MAX_MCV_ENTRIES} most common values are kept")
        if any(f < 0.0 or f > 1.0 for f in value.values()):
            raise ValueError("most common value frequencies must be within [0, 1]")
        if sum(value.values()) > 1.0 + 1e-4:
            raise ValueError("most common value frequencies sum to more than 1")
        return value

    @field_validator("references")
    @classmethod
    def _check_reference(cls, value: str | None) -> str | None:
        if value is not None and value.count(".") != 1:
            raise ValueError("references must look like 'table.column'")
        return value

    @property
    def is_text(self) -> bool:
        return _type_matches(self.data_type, TEXT_TYPES)

    @property
    def is_numeric(self) -> bool:
        return not self.is_text and _type_matches(self.data_type, NUMERIC_TYPES)

    @property
    def referenced_table(self) -> str | None:
        return self.references.split(".", 1)[0] if self.references else None

    @property
    def referenced_column(self) -> str | None:
        return self.references.split(".", 1)[1] if self.references else None

    @property
    def mcv_total(self) -> float:
        return sum(self.most_common_values.values())

    def distinct_count(self, row_count: float) -> float:
        """Resolve n_distinct to an absolute count for a table of row_count rows."""
        if self.n_distinct > 0:
            estimate = self.n_distinct
        elif self.n_distinct < 0:
            estimate = -self.n_distinct * row_count * (1.0 - self.null_frac)
        else:
            estimate = DEFAULT_NUM_DISTINCT
        upper = max(row_count, 1.0)
        return min(max(estimate, 1.0), upper)

    def mcv_frequency(self, value: Any) -> float | None:
        return self.most_common_values.get(mcv_key(value))


def mcv_key(value: Any) -> str:
    """Canonical string form used to key most-common-value maps."""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    return str(value)


class Index(BaseModel):
    """
    An index definition.

    Key column order matters: only a leading prefix of ``columns`` can be
    bound by a seek. ``include`` columns are stored in the leaf entries but
    cannot be searched on.
    """

    model_config = ConfigDict(frozen=True)

    name: str = Field(..., min_length=1)
    columns: tuple[str, ...] = Field(..., min_length=1)
    include: tuple[str, ...] = Field(default_factory=tuple)
    predicate: Predicate | None = Field(
        default=None,
        description="WHERE clause of a partial index",
    )
    unique: bool = False

    @field_validator("columns", "include", mode="before")
    @classmethod
    def _split_columns(cls, value: Any) -> Any:
        if isinstance(value, str):
            return tuple(c.strip() for c in value.split(",") if c.strip())
        return value

    @property
    def leading_column(self) -> str:
        return self.columns[0]

    @property
    def stored_columns(self) -> tuple[str, ...]:
        return self.columns + tuple(c for c in self.include if c not in self.columns)

    @property
    def is_partial(self) -> bool:
        return self.predicate is not None

    def covers(self, columns: set[str] | frozenset[str]) -> bool:
        """True when every column in ``columns`` can be answered from the index alone."""
        return set(columns) <= set(self.stored_columns)

    def definition(self, table: str) -> str:
        """CREATE INDEX statement for this index."""
        unique = "UNIQUE " if self.unique else ""
        sql = f"CREATE {unique}INDEX {self.name} ON {table} ({', '.join(self.columns)})"
        if self.include:
            sql += f" INCLUDE ({', '.join(self.include)})"
        if self.predicate is not None:
            sql += f" WHERE {self.predicate.to_sql(qualify=False)}"
        return sql + ";"


class Table(BaseModel):
    """Table-level statistics plus the table's columns and indexes."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(..., min_length=1)
    row_count: int = Field(..., ge=0)
    avg_row_width: int = Field(
        default=0,
        ge=0,
        description="Average row width in bytes (0 = sum of column widths)",
    )
    columns: tuple[Column, ...] = Field(default_factory=tuple)
    indexes: tuple[Index, ...] = Field(default_factory=tuple)
    analyzed_at: datetime | None = Field(
        default=None,
        description="When statistics were last refreshed",
    )

    @field_validator("columns", mode="before")
    @classmethod
    def _columns_from_mapping(cls, value: Any) -> Any:
        # Workload files may give columns as {name: {stats...}}
        if isinstance(value, dict):
            return tuple({"name": name, **(stats or {})} for name, stats in value.items())
        return value

    @model_validator(mode="after")
    def _check_consistency(self) -> "Table":
        names = [c.name for c in self.columns]
        if len(names) != len(set(names)):
            raise ValueError(f"table {self.name} declares a column more than once")
        index_names = [i.name for i in self.indexes]
        if len(index_names) != len(set(index_names)):
            raise ValueError(f"table {self.name} declares an index more than once")
        known = set(names)
        for index in self.indexes:
            missing = [c for c in index.stored_columns if c not in known]
            if missing:
                raise ValueError(
                    f"index {index.name} references unknown columns {missing} of {self.name}"
                )
        return self

    @property
    def row_width(self) -> int:
        if self.avg_row_width:
            return self.avg_row_width
        return max(sum(c.avg_width for c in self.columns), 1)

    def pages(self, page_size: int) -> int:
        """Heap pages occupied by the table (at least one)."""
        return max(1, math.ceil(self.row_count * self.row_width / page_size))

    def has_column(self, name: str) -> bool:
        return any(c.name == name for c in self.columns)

    def column(self, name: str) -> Column:
        for column in self.columns:
            if column.name == name:
                return column
        raise UnknownColumnError(self.name, name)

    def distinct_values(self, column: str) -> float:
        return self.column(column).distinct_count(self.row_count)

    def index(self, name: str) -> Index | None:
        for index in self.indexes:
            if index.name == name:
                return index
        return None

    def indexes_on(self, column: str) -> list[Index]:
        """Indexes whose leading key column is ``column``."""
        return [i for i in self.indexes if i.leading_column == column]

    def has_index_leading_with(self, columns: tuple[str, ...]) -> bool:
        """True if some index key starts with ``columns`` (in any order)."""
        wanted = set(columns)
        size = len(columns)
        return any(set(i.columns[:size]) == wanted for i in self.indexes)

    def with_index(self, index: Index) -> "Table":
        return self.model_copy(update={"indexes": self.indexes + (index,)})

    def without_index(self, name: str) -> "Table":
        return self.model_copy(
            update={"indexes": tuple(i for i in self.indexes if i.name != name)}
        )
