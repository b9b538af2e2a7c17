"""Shared fixtures: a small shop schema (orders, customers, regions)."""

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path

import pytest

from planadvisor.config import AdvisorConfig
from planadvisor.stats.models import Column, Index, Table
from planadvisor.stats.store import StatisticsStore

FIXTURES_DIR = Path(__file__).parent / "fixtures"

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


def make_orders(**overrides) -> Table:
    """500k orders, 64-byte rows, primary key only."""
    fields = dict(
        name="orders",
        row_count=500_000,
        avg_row_width=64,
        columns=(
            Column(name="id", data_type="bigint", n_distinct=-1.0, min_value=1,
                   max_value=500_000, correlation=1.0),
            Column(name="customer_id", data_type="bigint", n_distinct=10_000,
                   references="customers.id"),
            Column(name="status", data_type="text", n_distinct=5,
                   most_common_values={"pending": 0.02, "shipped": 0.9}),
            Column(name="created_at", data_type="date", n_distinct=366,
                   min_value="2024-01-01", max_value="2024-12-31", correlation=0.9),
            Column(name="total", data_type="numeric", n_distinct=-0.5,
                   min_value=0, max_value=1000),
        ),
        indexes=(Index(name="orders_pkey", columns=("id",), unique=True),),
    )
    fields.update(overrides)
    return Table(**fields)


def make_customers(**overrides) -> Table:
    fields = dict(
        name="customers",
        row_count=10_000,
        avg_row_width=40,
        columns=(
            Column(name="id", data_type="bigint", n_distinct=-1.0),
            Column(name="name", data_type="text", n_distinct=-1.0, avg_width=24),
            Column(name="region_id", data_type="bigint", n_distinct=10,
                   references="regions.id"),
        ),
        indexes=(Index(name="customers_pkey", columns=("id",), unique=True),),
    )
    fields.update(overrides)
    return Table(**fields)


def make_regions(**overrides) -> Table:
    fields = dict(
        name="regions",
        row_count=10,
        avg_row_width=24,
        columns=(
            Column(name="id", data_type="bigint", n_distinct=-1.0),
            Column(name="name", data_type="text", n_distinct=-1.0, avg_width=16),
        ),
        indexes=(Index(name="regions_pkey", columns=("id",), unique=True),),
    )
    fields.update(overrides)
    return Table(**fields)


@pytest.fixture
def orders() -> Table:
    return make_orders()


@pytest.fixture
def customers() -> Table:
    return make_customers()


@pytest.fixture
def regions() -> Table:
    return make_regions()


@pytest.fixture
def store(orders: Table, customers: Table, regions: Table) -> StatisticsStore:
    return StatisticsStore([orders, customers, regions], clock=lambda: NOW)


@pytest.fixture
def config() -> AdvisorConfig:
    """Default configuration, independent of PLANADVISOR_* variables."""
    return AdvisorConfig()
