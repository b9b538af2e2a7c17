"""
Statistics sources: compute Table statistics from actual data.

Two implementations of the ``StatisticsSource`` protocol:

- RowDataSource computes statistics from rows held in memory. Used by
  tests, notebooks, and for sampled data exported from elsewhere.
- SQLAlchemySource reflects a live database (columns, indexes, foreign
  keys) and computes counts, distinct counts, null fractions, min/max and
  most common values with SQL aggregates. Works with any SQLAlchemy
  dialect.

Both are deterministic: collecting the same data twice yields equal
Table models.
"""

from __future__ import annotations

import logging
import statistics
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Iterable, Mapping, Sequence

from sqlalchemy import MetaData, String, cast, desc, distinct, func, inspect, select
from sqlalchemy import Table as SATable
from sqlalchemy.engine import Engine
from sqlalchemy.exc import NoSuchTableError, SQLAlchemyError

from planadvisor.exceptions import StatisticsError, UnknownTableError
from planadvisor.stats.models import MAX_MCV_ENTRIES, Column, Index, Table

logger = logging.getLogger(__name__)

# Distinct counts above this fraction of rows are stored as a negative
# ratio so they scale with the table (same threshold ANALYZE uses).
DISTINCT_RATIO_THRESHOLD = 0.1


def infer_data_type(value: Any) -> str:
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, int):
        return "bigint"
    if isinstance(value, float):
        return "double precision"
    if isinstance(value, datetime):
        return "timestamp"
    if isinstance(value, date):
        return "date"
    return "text"


def value_width(value: Any) -> int:
    if isinstance(value, bool):
        return 1
    if isinstance(value, (int, float, datetime)):
        return 8
    if isinstance(value, date):
        return 4
    return len(str(value).encode("utf-8")) + 1


def encode_n_distinct(distinct: int, non_null: int) -> float:
    """Absolute count for low-cardinality columns, negative ratio otherwise."""
    if non_null == 0:
        return 0.0
    if distinct > DISTINCT_RATIO_THRESHOLD * non_null:
        return -round(distinct / non_null, 6)
    return float(distinct)


def select_mcvs(
    counts: Sequence[tuple[Any, int]],
    total_rows: int,
    distinct: int,
    limit: int = MAX_MCV_ENTRIES,
) -> dict[Any, float]:
    """
    Pick most common values from (value, count) pairs sorted by count.

    When every distinct value fits, all are kept. Otherwise only values
    noticeably more common than average are kept, like ANALYZE does.
    """
    if total_rows == 0 or not counts:
        return {}
    non_null = sum(c for _, c in counts)
    if distinct <= limit:
        chosen = counts[:limit]
    else:
        average = non_null / max(distinct, 1)
        chosen = [(v, c) for v, c in counts[:limit] if c >= 2 and c > 1.25 * average]
    return {v: round(c / total_rows, 6) for v, c in chosen}


# ── In-memory rows ───────────────────────────────────────────────────────


@dataclass
class _TableData:
    rows: list[Mapping[str, Any]]
    column_types: dict[str, str] = field(default_factory=dict)
    references: dict[str, str] = field(default_factory=dict)
    indexes: tuple[Index, ...] = ()


class RowDataSource:
    """
    Computes statistics from rows held in memory.

    Example:
        source = RowDataSource()
        source.load("orders", rows, references={"customer_id": "customers.id"})
        store = StatisticsStore(source=source)
        store.refresh("orders")
    """

    def __init__(self) -> None:
        self._tables: dict[str, _TableData] = {}

    def load(
        self,
        table: str,
        rows: Iterable[Mapping[str, Any]],
        *,
        column_types: Mapping[str, str] | None = None,
        references: Mapping[str, str] | None = None,
        indexes: Sequence[Index] = (),
    ) -> None:
        """Replace the rows backing ``table``."""
        self._tables[table] = _TableData(
            rows=list(rows),
            column_types=dict(column_types or {}),
            references=dict(references or {}),
            indexes=tuple(indexes),
        )

    def tables(self) -> list[str]:
        return sorted(self._tables)

    def collect(self, table: str) -> Table:
        data = self._tables.get(table)
        if data is None:
            raise UnknownTableError(table)

        names: list[str] = list(data.column_types)
        for row in data.rows:
            for name in row:
                if name not in names:
                    names.append(name)

        total = len(data.rows)
        columns = [
            self._column_stats(
                name,
                [row.get(name) for row in data.rows],
                total,
                data.column_types.get(name),
                data.references.get(name),
            )
            for name in names
        ]
        width = sum(c.avg_width for c in columns) if columns else 0
        return Table(
            name=table,
            row_count=total,
            avg_row_width=width,
            columns=tuple(columns),
            indexes=data.indexes,
        )

    def _column_stats(
        self,
        name: str,
        values: list[Any],
        total: int,
        declared_type: str | None,
        reference: str | None,
    ) -> Column:
        present = [v for v in values if v is not None]
        nulls = total - len(present)

        counts: dict[Any, int] = {}
        for v in present:
            counts[v] = counts.get(v, 0) + 1
        ordered = sorted(counts.items(), key=lambda item: (-item[1], str(item[0])))

        min_value = max_value = None
        correlation = 0.0
        sortable = _sortable(present)
        if sortable:
            distinct_sorted = sorted(counts)
            min_value, max_value = distinct_sorted[0], distinct_sorted[-1]
            if isinstance(min_value, bool):
                min_value = max_value = None
            correlation = _physical_correlation(present, distinct_sorted)

        data_type = declared_type or (infer_data_type(present[0]) if present else "text")
        avg_width = (
            round(sum(value_width(v) for v in present) / len(present)) if present else 1
        )

        return Column(
            name=name,
            data_type=data_type,
            null_frac=round(nulls / total, 6) if total else 0.0,
            n_distinct=encode_n_distinct(len(counts), len(present)),
            most_common_values=select_mcvs(ordered, total, len(counts)),
            min_value=min_value,
            max_value=max_value,
            avg_width=max(avg_width, 1),
            correlation=correlation,
            references=reference,
        )


def _sortable(values: list[Any]) -> bool:
    if not values:
        return False
    try:
        sorted(set(values))
    except TypeError:
        return False
    return True


def _physical_correlation(values: list[Any], distinct_sorted: list[Any]) -> float:
    """Correlation between row position and value rank, as pg_stats.correlation."""
    if len(values) < 2:
        return 1.0
    rank = {v: i for i, v in enumerate(distinct_sorted)}
    ranks = [rank[v] for v in values]
    if len(distinct_sorted) < 2:
        return 1.0
    positions = list(range(len(values)))
    return max(-1.0, min(1.0, round(statistics.correlation(positions, ranks), 6)))


# ── Live database ────────────────────────────────────────────────────────


class SQLAlchemySource:
    """
    Computes statistics from a live database through SQLAlchemy.

    Reflection supplies columns, primary key, indexes and foreign keys;
    aggregates supply the counts. Partial and expression indexes are not
    representable in the advisor's index model and are skipped.
    """

    def __init__(
        self,
        engine: Engine,
        *,
        schema: str | None = None,
        mcv_limit: int = MAX_MCV_ENTRIES,
    ) -> None:
        self.engine = engine
        self.schema = schema
        self.mcv_limit = mcv_limit

    def tables(self) -> list[str]:
        return sorted(inspect(self.engine).get_table_names(schema=self.schema))

    def collect(self, table: str) -> Table:
        inspector = inspect(self.engine)
        if not inspector.has_table(table, schema=self.schema):
            raise UnknownTableError(table)

        try:
            sa_table = SATable(table, MetaData(), autoload_with=self.engine, schema=self.schema)
        except NoSuchTableError:
            raise UnknownTableError(table) from None

        references = self._foreign_keys(inspector, table)
        indexes = self._indexes(inspector, table)

        try:
            with self.engine.connect() as conn:
                row_count = conn.execute(
                    select(func.count()).select_from(sa_table)
                ).scalar_one()
                columns = [
                    self._column_stats(conn, sa_table, col, row_count, references.get(col.name))
                    for col in sa_table.columns
                ]
        except SQLAlchemyError as e:
            raise StatisticsError(f"Failed to collect statistics for {table}: {e}") from e

        logger.debug("Collected %d columns for %s (%d rows)", len(columns), table, row_count)
        return Table(
            name=table,
            row_count=row_count,
            avg_row_width=sum(c.avg_width for c in columns),
            columns=tuple(columns),
            indexes=tuple(indexes),
        )

    def _foreign_keys(self, inspector: Any, table: str) -> dict[str, str]:
        references: dict[str, str] = {}
        for fk in inspector.get_foreign_keys(table, schema=self.schema):
            for local, remote in zip(fk["constrained_columns"], fk["referred_columns"]):
                references[local] = f"{fk['referred_table']}.{remote}"
        return references

    def _indexes(self, inspector: Any, table: str) -> list[Index]:
        indexes: list[Index] = []
        pk = inspector.get_pk_constraint(table, schema=self.schema)
        pk_columns = tuple(pk.get("constrained_columns") or ())
        if pk_columns:
            indexes.append(
                Index(name=pk.get("name") or f"{table}_pkey", columns=pk_columns, unique=True)
            )

        for idx in inspector.get_indexes(table, schema=self.schema):
            columns = idx.get("column_names") or []
            if not columns or any(c is None for c in columns):
                logger.info("Skipping expression index %s on %s", idx.get("name"), table)
                continue
            options = idx.get("dialect_options") or {}
            if any(key.endswith("_where") for key in options):
                logger.info("Skipping partial index %s on %s", idx.get("name"), table)
                continue
            if tuple(columns) == pk_columns:
                continue
            indexes.append(
                Index(
                    name=idx["name"],
                    columns=tuple(columns),
                    include=tuple(idx.get("include_columns") or ()),
                    unique=bool(idx.get("unique")),
                )
            )
        return indexes

    def _column_stats(
        self,
        conn: Any,
        sa_table: SATable,
        col: Any,
        row_count: int,
        reference: str | None,
    ) -> Column:
        n_distinct, non_null, low, high, avg_len = conn.execute(
            select(
                func.count(distinct(col)),
                func.count(col),
                func.min(col),
                func.max(col),
                func.avg(func.length(cast(col, String))),
            ).select_from(sa_table)
        ).one()

        top = conn.execute(
            select(col, func.count().label("n"))
            .where(col.is_not(None))
            .group_by(col)
            .order_by(desc("n"), col)
            .limit(self.mcv_limit)
        ).all()

        if isinstance(low, Decimal):
            low, high = float(low), float(high)
        if isinstance(low, bool) or isinstance(low, (bytes, bytearray)):
            low = high = None

        return Column(
            name=col.name,
            data_type=str(col.type),
            null_frac=round((row_count - non_null) / row_count, 6) if row_count else 0.0,
            n_distinct=encode_n_distinct(n_distinct, non_null),
            most_common_values=select_mcvs(
                [(v, n) for v, n in top], row_count, n_distinct, self.mcv_limit
            ),
            min_value=low,
            max_value=high,
            avg_width=max(1, round(float(avg_len or 8))),
            references=reference,
        )
