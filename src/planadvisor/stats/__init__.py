"""Table, column and index statistics plus the snapshot store."""

from planadvisor.stats.collectors import RowDataSource, SQLAlchemySource
from planadvisor.stats.models import Column, Index, Table
from planadvisor.stats.store import StatisticsSnapshot, StatisticsSource, StatisticsStore

__all__ = [
    "Column",
    "Index",
    "RowDataSource",
    "SQLAlchemySource",
    "StatisticsSnapshot",
    "StatisticsSource",
    "StatisticsStore",
    "Table",
]
