"""
Statistics store with copy-on-refresh snapshots.

Readers call ``snapshot()`` once and plan against that immutable view for
the whole analysis. Writers (refresh, index DDL, table registration) build a
new table dict and publish a new snapshot under a lock; published snapshots
are never modified, so concurrent analyses never observe a half-applied
refresh.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Callable, Iterable, Mapping, Protocol

from pydantic import ValidationError

from planadvisor.exceptions import StatisticsError, UnknownColumnError, UnknownTableError
from planadvisor.stats.models import Column, Index, Table

logger = logging.getLogger(__name__)


class StatisticsSource(Protocol):
    """Something that can (re)compute statistics for a table."""

    def collect(self, table: str) -> Table:
        ...


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class StatisticsSnapshot:
    """An immutable, versioned view of every table's statistics."""

    version: int
    taken_at: datetime
    tables: Mapping[str, Table] = field(default_factory=lambda: MappingProxyType({}))

    def get_table(self, name: str) -> Table:
        try:
            return self.tables[name]
        except KeyError:
            raise UnknownTableError(name) from None

    def get_column_stats(self, table: str, column: str) -> Column:
        return self.get_table(table).column(column)

    def has_table(self, name: str) -> bool:
        return name in self.tables

    def with_table(self, table: Table) -> "StatisticsSnapshot":
        """
        A private what-if view with ``table`` replaced. The store never
        publishes it, and this snapshot is left untouched.
        """
        tables = dict(self.tables)
        tables[table.name] = table
        return StatisticsSnapshot(
            version=self.version,
            taken_at=self.taken_at,
            tables=MappingProxyType(tables),
        )

    def __len__(self) -> int:
        return len(self.tables)


class StatisticsStore:
    """
    Holds the current statistics snapshot and publishes new ones.

    Example:
        store = StatisticsStore([orders, customers])
        snap = store.snapshot()
        store.create_index("orders", Index(name="ix_status", columns=("status",)))
        assert snap.version < store.snapshot().version
    """

    def __init__(
        self,
        tables: Iterable[Table] = (),
        *,
        source: StatisticsSource | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._source = source
        self._clock = clock or _utcnow
        self._lock = threading.Lock()
        initial = {t.name: t for t in tables}
        self._snapshot = StatisticsSnapshot(
            version=1,
            taken_at=self._clock(),
            tables=MappingProxyType(initial),
        )

    @property
    def version(self) -> int:
        return self._snapshot.version

    @property
    def source(self) -> StatisticsSource | None:
        return self._source

    def snapshot(self) -> StatisticsSnapshot:
        """The current snapshot. Cheap; safe to call from any thread."""
        return self._snapshot

    def get_table(self, name: str) -> Table:
        return self._snapshot.get_table(name)

    def get_column_stats(self, table: str, column: str) -> Column:
        return self._snapshot.get_column_stats(table, column)

    def table_names(self) -> list[str]:
        return sorted(self._snapshot.tables)

    # ── Writers ──────────────────────────────────────────────────────────

    def _publish(self, update: Callable[[dict[str, Table]], None]) -> StatisticsSnapshot:
        with self._lock:
            tables = dict(self._snapshot.tables)
            update(tables)
            self._snapshot = StatisticsSnapshot(
                version=self._snapshot.version + 1,
                taken_at=self._clock(),
                tables=MappingProxyType(tables),
            )
            return self._snapshot

    def add_table(self, table: Table) -> StatisticsSnapshot:
        """Register (or replace) a table's statistics."""
        def update(tables: dict[str, Table]) -> None:
            tables[table.name] = table

        snapshot = self._publish(update)
        logger.debug("Registered statistics for %s (snapshot v%d)", table.name, snapshot.version)
        return snapshot

    def refresh(self, name: str) -> Table:
        """
        Recompute a table's statistics from the configured source.

        Indexes the store already knows about are kept when the source does
        not report any (sources built from raw rows know nothing of indexes).

        Raises:
            StatisticsError: If no source is configured.
            UnknownTableError: If the source does not know the table.
        """
        if self._source is None:
            raise StatisticsError(f"Cannot refresh {name}: no statistics source configured")

        collected = self._source.collect(name)
        analyzed_at = self._clock()

        def update(tables: dict[str, Table]) -> None:
            current = tables.get(name)
            fresh = collected
            if current is not None and not collected.indexes and current.indexes:
                known = {c.name for c in collected.columns}
                kept = tuple(
                    i for i in current.indexes if set(i.stored_columns) <= known
                )
                fresh = fresh.model_copy(update={"indexes": kept})
            tables[name] = fresh.model_copy(update={"analyzed_at": analyzed_at})

        snapshot = self._publish(update)
        logger.info(
            "Refreshed statistics for %s: %d rows (snapshot v%d)",
            name,
            collected.row_count,
            snapshot.version,
        )
        return snapshot.tables[name]

    def refresh_all(self) -> StatisticsSnapshot:
        for name in self.table_names():
            self.refresh(name)
        return self._snapshot

    def create_index(self, table: str, index: Index) -> StatisticsSnapshot:
        """
        Add an index definition to a table.

        Raises:
            UnknownTableError: If the table is unknown.
            UnknownColumnError: If the index names a column the table lacks.
            StatisticsError: If an index with the same name already exists.
        """
        def update(tables: dict[str, Table]) -> None:
            if table not in tables:
                raise UnknownTableError(table)
            current = tables[table]
            if current.index(index.name) is not None:
                raise StatisticsError(f"Index {index.name} already exists on {table}")
            for column in index.stored_columns:
                if not current.has_column(column):
                    raise UnknownColumnError(table, column)
            try:
                tables[table] = Table.model_validate(
                    {**dict(current), "indexes": current.indexes + (index,)}
                )
            except ValidationError as e:
                raise StatisticsError(f"Invalid index {index.name} on {table}: {e}") from e

        snapshot = self._publish(update)
        logger.debug("Created index %s on %s (snapshot v%d)", index.name, table, snapshot.version)
        return snapshot

    def drop_index(self, table: str, name: str) -> StatisticsSnapshot:
        """
        Remove an index definition from a table.

        Raises:
            UnknownTableError: If the table is unknown.
            StatisticsError: If the table has no such index.
        """
        def update(tables: dict[str, Table]) -> None:
            if table not in tables:
                raise UnknownTableError(table)
            current = tables[table]
            if current.index(name) is None:
                raise StatisticsError(f"Index {name} does not exist on {table}")
            tables[table] = current.without_index(name)

        snapshot = self._publish(update)
        logger.debug("Dropped index %s on %s (snapshot v%d)", name, table, snapshot.version)
        return snapshot
