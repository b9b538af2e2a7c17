"""
Loader for workload files.

A workload bundles table statistics with the queries to analyze:

    tables:
      - name: orders
        row_count: 500000
        avg_row_width: 64
        columns:
          - {name: id, data_type: bigint, n_distinct: -1}
          - {name: status, most_common_values: {pending: 0.2, shipped: 0.7}}
        indexes:
          - {name: orders_pkey, columns: [id], unique: true}
    queries:
      - name: pending_orders
        relations: [orders]
        where: {kind: comparison, column: status, operator: "=", value: pending}

Error handling philosophy: fail fast with clear messages. Anything wrong
with the file is reported as a WorkloadError naming the offending field.
"""

from __future__ import annotations

import json
from datetime import datetime
from pathlib import Path
from typing import Any, Callable

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from planadvisor.exceptions import WorkloadError
from planadvisor.query.spec import QuerySpec
from planadvisor.stats.models import Table
from planadvisor.stats.store import StatisticsStore


class Workload(BaseModel):
    """Tables plus queries, as read from a workload file."""

    model_config = ConfigDict(frozen=True)

    tables: tuple[Table, ...] = Field(default_factory=tuple)
    queries: tuple[QuerySpec, ...] = Field(default_factory=tuple)

    @model_validator(mode="after")
    def _check_names(self) -> "Workload":
        names = [q.name for q in self.queries]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            raise ValueError(f"duplicate query names: {duplicates}")
        return self

    def store(self, clock: Callable[[], datetime] | None = None) -> StatisticsStore:
        return StatisticsStore(self.tables, clock=clock)

    def query(self, name: str) -> QuerySpec:
        for query in self.queries:
            if query.name == name:
                return query
        known = ", ".join(q.name for q in self.queries) or "none"
        raise WorkloadError(f"No query named '{name}' (known: {known})")


def load_workload(path: str | Path) -> Workload:
    """
    Load a workload from a YAML or JSON file.

    Raises:
        WorkloadError: If the file cannot be read, parsed or validated.
    """
    filepath = Path(path)
    if not filepath.exists():
        raise WorkloadError(f"File not found: {filepath}", source=str(filepath))
    if not filepath.is_file():
        raise WorkloadError(f"Path is not a file: {filepath}", source=str(filepath))

    try:
        content = filepath.read_text(encoding="utf-8")
    except OSError as e:
        raise WorkloadError(f"Cannot read file: {filepath}: {e}", source=str(filepath)) from e

    fmt = "json" if filepath.suffix == ".json" else "yaml"
    return parse_workload(content, fmt=fmt, source=str(filepath))


def parse_workload(content: str, *, fmt: str = "yaml", source: str = "<string>") -> Workload:
    """Parse workload text. YAML is a superset of JSON, so "yaml" accepts both."""
    if not content.strip():
        raise WorkloadError("Workload is empty", source=source)

    try:
        data = json.loads(content) if fmt == "json" else yaml.safe_load(content)
    except json.JSONDecodeError as e:
        raise WorkloadError(
            f"Invalid JSON at line {e.lineno}, column {e.colno}: {e.msg}", source=source
        ) from e
    except yaml.YAMLError as e:
        raise WorkloadError(f"Invalid YAML: {e}", source=source) from e

    return validate_workload(data, source=source)


def validate_workload(data: Any, *, source: str = "<data>") -> Workload:
    """Validate already-parsed workload data."""
    if not isinstance(data, dict):
        raise WorkloadError(
            f"Expected a mapping with 'tables' and 'queries', got {type(data).__name__}",
            source=source,
        )

    try:
        return Workload.model_validate(data)
    except ValidationError as e:
        errors = []
        for error in e.errors():
            loc = " -> ".join(str(x) for x in error["loc"])
            errors.append(f"  {loc}: {error['msg']}")
        raise WorkloadError(
            "Workload validation failed:\n" + "\n".join(errors), source=source
        ) from e
