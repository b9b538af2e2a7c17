"""
Configuration system for planadvisor.

Implements 12-factor config principles:
- Environment variables as primary config source
- Optional config file (JSON or YAML) for local development
- Cost model constants passed explicitly into the estimator
- Per-rule thresholds
- Per-table overrides

Usage:
    from planadvisor.config import get_config, AdvisorConfig

    # Load from environment (default)
    config = get_config()

    # Cost constants for the estimator
    config.cost.random_page_cost

    # Access rule thresholds
    margin = config.get_rule_threshold("MISSING_INDEX", "min_improvement")

    # Check if rule is enabled
    if config.is_rule_enabled("SPILL_RISK"):
        ...
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
from enum import Enum
from functools import lru_cache
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from planadvisor.exceptions import ConfigurationError

logger = logging.getLogger(__name__)

SCAN_STRATEGIES = ("seq_scan", "index_scan", "index_only_scan", "bitmap_scan")
JOIN_STRATEGIES = ("nested_loop", "hash_join", "merge_join")


class Environment(str, Enum):
    """Environment profiles with different default behaviors."""

    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"

    @classmethod
    def from_string(cls, value: str) -> "Environment":
        """Parse environment from string, defaulting to development."""
        try:
            return cls(value.lower())
        except ValueError:
            return cls.DEVELOPMENT


class CostSettings(BaseModel):
    """
    Constants of the cost model.

    Defaults follow PostgreSQL's planner GUCs. All costs are in abstract
    units where one sequential page read costs ``seq_page_cost``.
    """

    model_config = ConfigDict(frozen=True)

    seq_page_cost: float = Field(default=1.0, gt=0, description="Cost of a sequential page read")
    random_page_cost: float = Field(default=4.0, gt=0, description="Cost of a random page read")
    cpu_tuple_cost: float = Field(default=0.01, ge=0, description="CPU cost per heap row")
    cpu_index_tuple_cost: float = Field(
        default=0.005, ge=0, description="CPU cost per index entry"
    )
    cpu_operator_cost: float = Field(
        default=0.0025, ge=0, description="CPU cost per operator or qual evaluation"
    )
    page_size: int = Field(default=8192, gt=0, description="Page size in bytes")
    memory_budget_for_hash_build: int = Field(
        default=4 * 1024 * 1024,
        gt=0,
        description="Bytes a hash join build side may use before spilling",
    )
    sort_memory_budget: int = Field(
        default=4 * 1024 * 1024,
        gt=0,
        description="Bytes an in-memory sort may use before spilling",
    )
    max_join_enumeration_steps: int = Field(
        default=10_000,
        gt=0,
        description="Candidate joins costed before enumeration is truncated",
    )
    spill_penalty_factor: float = Field(
        default=2.0, ge=0, description="Multiplier applied to spilled page I/O"
    )
    sort_cost_factor: float = Field(
        default=0.5, ge=0, description="Scale of the n*log2(n) comparison cost of a sort"
    )
    bitmap_build_factor: float = Field(
        default=1.0, ge=0, description="Scale of the per-entry bitmap construction cost"
    )
    index_fanout: int = Field(
        default=256, ge=2, description="Average B-tree fanout used to derive index height"
    )
    enabled_scans: tuple[str, ...] = Field(
        default=SCAN_STRATEGIES, description="Scan strategies the enumerator may use"
    )
    enabled_joins: tuple[str, ...] = Field(
        default=JOIN_STRATEGIES, description="Join strategies the enumerator may use"
    )

    @field_validator("enabled_scans")
    @classmethod
    def _check_scans(cls, value: tuple[str, ...]) -> tuple[str, ...]:
        unknown = set(value) - set(SCAN_STRATEGIES)
        if unknown:
            raise ValueError(f"unknown scan strategies: {sorted(unknown)}")
        if "seq_scan" not in value:
            raise ValueError("seq_scan cannot be disabled, it is the baseline access path")
        return tuple(value)

    @field_validator("enabled_joins")
    @classmethod
    def _check_joins(cls, value: tuple[str, ...]) -> tuple[str, ...]:
        unknown = set(value) - set(JOIN_STRATEGIES)
        if unknown:
            raise ValueError(f"unknown join strategies: {sorted(unknown)}")
        return tuple(value)

    def scan_enabled(self, strategy: str) -> bool:
        return strategy in self.enabled_scans

    def join_enabled(self, strategy: str) -> bool:
        return strategy in self.enabled_joins


class RuleConfig(BaseModel):
    """Configuration for a single rule."""

    model_config = ConfigDict(frozen=True)

    enabled: bool = Field(default=True, description="Whether the rule is enabled")
    thresholds: dict[str, int | float] = Field(
        default_factory=dict,
        description="Rule-specific thresholds",
    )


class TableOverrides(BaseModel):
    """Per-table configuration overrides."""

    model_config = ConfigDict(frozen=True)

    large_table_rows: int | None = Field(
        default=None,
        description="Override for the row count above which a table counts as large",
    )
    index_disabled: bool = Field(
        default=False,
        description="Disable index recommendations for this table",
    )
    skip_rules: list[str] = Field(
        default_factory=list,
        description="Rules to skip for this table",
    )


class AdvisorConfig(BaseModel):
    """
    planadvisor configuration.

    Loaded from environment variables and optional config file.
    """

    model_config = ConfigDict(frozen=True)

    environment: Environment = Field(
        default=Environment.DEVELOPMENT,
        description="Current environment (development/staging/production)",
    )

    cost: CostSettings = Field(
        default_factory=CostSettings,
        description="Cost model constants",
    )

    # Default thresholds (can be overridden per-rule)
    default_large_table_rows: int = Field(
        default=10_000,
        description="Row count above which a table counts as large",
    )
    default_min_improvement: float = Field(
        default=0.10,
        description="Fractional cost reduction a recommendation must achieve",
    )
    stale_statistics_hours: float = Field(
        default=168.0,
        description="Age after which table statistics are reported as stale",
    )

    rules: dict[str, RuleConfig] = Field(
        default_factory=dict,
        description="Per-rule configurations",
    )
    table_overrides: dict[str, TableOverrides] = Field(
        default_factory=dict,
        description="Per-table configuration overrides",
    )

    # Execution
    max_workers: int = Field(
        default=4,
        ge=1,
        description="Threads used by QueryAdvisor.analyze_many",
    )
    strict_planning: bool = Field(
        default=False,
        description="Raise NoFeasibleJoinStrategyError instead of falling back",
    )
    fail_fast: bool = Field(
        default=False,
        description="Re-raise the first rule failure instead of recording it",
    )

    # Observability
    tracing_enabled: bool = Field(
        default=False,
        description="Record trace spans for each analysis phase",
    )
    metrics_enabled: bool = Field(
        default=True,
        description="Enable metrics collection",
    )

    def get_rule_threshold(
        self,
        rule_id: str,
        threshold_name: str,
        default: int | float | None = None,
    ) -> int | float | None:
        """
        Get a threshold value for a rule.

        Lookup order:
        1. Rule-specific threshold in config
        2. Default threshold if name matches a default_* field
        3. Provided default value
        """
        if rule_id in self.rules:
            rule_config = self.rules[rule_id]
            if threshold_name in rule_config.thresholds:
                return rule_config.thresholds[threshold_name]

        default_field = f"default_{threshold_name}"
        if hasattr(self, default_field):
            return getattr(self, default_field)

        return default

    def is_rule_enabled(self, rule_id: str) -> bool:
        """Check if a rule is enabled."""
        if rule_id in self.rules:
            return self.rules[rule_id].enabled
        return True  # Rules enabled by default

    def get_table_override(
        self,
        table: str,
        field_name: str,
        default: Any = None,
    ) -> Any:
        """Get a table-specific override value."""
        if table in self.table_overrides:
            overrides = self.table_overrides[table]
            if hasattr(overrides, field_name):
                value = getattr(overrides, field_name)
                if value is not None:
                    return value
        return default

    def should_skip_rule_for_table(self, rule_id: str, table: str) -> bool:
        """Check if a rule should be skipped for a specific table."""
        if table in self.table_overrides:
            return rule_id in self.table_overrides[table].skip_rules
        return False

    def large_table_rows(self, table: str) -> int:
        return int(self.get_table_override(table, "large_table_rows", self.default_large_table_rows))

    def config_hash(self) -> str:
        """Hash of the settings that influence findings, for report provenance."""
        config_dict = self.model_dump(
            exclude={"max_workers", "tracing_enabled", "metrics_enabled"}
        )
        config_json = json.dumps(config_dict, sort_keys=True, default=str)
        return hashlib.sha256(config_json.encode()).hexdigest()[:16]


def _parse_env_bool(value: str | None, default: bool = False) -> bool:
    """Parse boolean from environment variable."""
    if value is None:
        return default
    return value.lower() in ("true", "1", "yes", "on")


def _parse_env_int(value: str | None, default: int) -> int:
    """Parse integer from environment variable."""
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        logger.warning("Ignoring non-integer environment value %r", value)
        return default


def _parse_env_float(value: str | None, default: float) -> float:
    """Parse float from environment variable."""
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        logger.warning("Ignoring non-numeric environment value %r", value)
        return default


def _load_cost_settings_from_env() -> CostSettings:
    """
    Read PLANADVISOR_<FIELD> for every numeric CostSettings field, plus
    comma-separated PLANADVISOR_ENABLED_SCANS / PLANADVISOR_ENABLED_JOINS.
    """
    defaults = CostSettings()
    kwargs: dict[str, Any] = {}

    for name, info in CostSettings.model_fields.items():
        raw = os.environ.get(f"PLANADVISOR_{name.upper()}")
        if raw is None:
            continue
        if name in ("enabled_scans", "enabled_joins"):
            kwargs[name] = tuple(s.strip() for s in raw.split(",") if s.strip())
        elif info.annotation is int:
            kwargs[name] = _parse_env_int(raw, getattr(defaults, name))
        else:
            kwargs[name] = _parse_env_float(raw, getattr(defaults, name))

    try:
        return CostSettings(**kwargs)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid cost settings in environment: {e}", "cost") from e


def load_config_from_env() -> AdvisorConfig:
    """
    Load configuration from environment variables.

    Environment variable naming convention:
    - PLANADVISOR_<SETTING> for global and cost settings
    - PLANADVISOR_RULE_<RULE_ID>_<SETTING> for rule-specific settings
    - PLANADVISOR_TABLE_<TABLE>_<SETTING> for table-specific overrides

    Examples:
    - PLANADVISOR_ENVIRONMENT=production
    - PLANADVISOR_RANDOM_PAGE_COST=1.1
    - PLANADVISOR_RULE_SPILL_RISK_ENABLED=false
    - PLANADVISOR_RULE_MISSING_INDEX_MIN_IMPROVEMENT=0.25
    - PLANADVISOR_TABLE_orders_SKIP_RULES=MISSING_INDEX,SPILL_RISK
    """
    env_str = os.environ.get("PLANADVISOR_ENVIRONMENT", "development")
    environment = Environment.from_string(env_str)

    config_kwargs: dict[str, Any] = {
        "environment": environment,
        "cost": _load_cost_settings_from_env(),
        "default_large_table_rows": _parse_env_int(
            os.environ.get("PLANADVISOR_LARGE_TABLE_ROWS"), 10_000
        ),
        "default_min_improvement": _parse_env_float(
            os.environ.get("PLANADVISOR_MIN_IMPROVEMENT"), 0.10
        ),
        "stale_statistics_hours": _parse_env_float(
            os.environ.get("PLANADVISOR_STALE_STATISTICS_HOURS"), 168.0
        ),
        "max_workers": _parse_env_int(
            os.environ.get("PLANADVISOR_MAX_WORKERS"), 4
        ),
        "strict_planning": _parse_env_bool(
            os.environ.get("PLANADVISOR_STRICT_PLANNING"), False
        ),
        "fail_fast": _parse_env_bool(
            os.environ.get("PLANADVISOR_FAIL_FAST"), False
        ),
        "tracing_enabled": _parse_env_bool(
            os.environ.get("PLANADVISOR_TRACING_ENABLED"), False
        ),
        "metrics_enabled": _parse_env_bool(
            os.environ.get("PLANADVISOR_METRICS_ENABLED"), True
        ),
    }

    # Parse rule-specific settings
    rules: dict[str, RuleConfig] = {}
    rule_prefix = "PLANADVISOR_RULE_"

    for key, value in os.environ.items():
        if not key.startswith(rule_prefix):
            continue
        rest = key[len(rule_prefix):]
        if rest.endswith("_ENABLED"):
            rule_id, setting = rest[: -len("_ENABLED")], "enabled"
        else:
            rule_id, setting = _split_rule_setting(rest)
        if not rule_id or not setting:
            continue

        current = rules.get(rule_id, RuleConfig())
        if setting == "enabled":
            rules[rule_id] = current.model_copy(
                update={"enabled": _parse_env_bool(value, True)}
            )
            continue

        thresholds = dict(current.thresholds)
        try:
            thresholds[setting] = float(value) if "." in value else int(value)
        except ValueError:
            logger.warning("Could not parse threshold %s=%s", key, value)
            continue
        rules[rule_id] = current.model_copy(update={"thresholds": thresholds})

    config_kwargs["rules"] = rules

    # Parse table overrides
    table_overrides: dict[str, TableOverrides] = {}
    table_prefix = "PLANADVISOR_TABLE_"

    for key, value in os.environ.items():
        if not key.startswith(table_prefix):
            continue
        parts = key[len(table_prefix):].split("_", 1)
        if len(parts) != 2:
            continue
        table_name = parts[0].lower()
        setting = parts[1].lower()
        current = table_overrides.get(table_name, TableOverrides())

        if setting == "large_table_rows":
            table_overrides[table_name] = current.model_copy(
                update={"large_table_rows": _parse_env_int(value, 10_000)}
            )
        elif setting == "index_disabled":
            table_overrides[table_name] = current.model_copy(
                update={"index_disabled": _parse_env_bool(value, False)}
            )
        elif setting == "skip_rules":
            table_overrides[table_name] = current.model_copy(
                update={"skip_rules": [r.strip() for r in value.split(",") if r.strip()]}
            )

    config_kwargs["table_overrides"] = table_overrides

    return AdvisorConfig(**config_kwargs)


# Rule IDs contain underscores, so the setting name is matched against the
# known threshold suffixes before falling back to the last segment.
_KNOWN_SETTINGS = (
    "min_improvement",
    "large_table_rows",
    "max_hours",
    "min_offset",
    "min_rows",
    "max_include_columns",
)


def _split_rule_setting(rest: str) -> tuple[str, str]:
    lowered = rest.lower()
    for setting in _KNOWN_SETTINGS:
        suffix = "_" + setting
        if lowered.endswith(suffix):
            return rest[: -len(suffix)], setting
    parts = rest.split("_")
    if len(parts) < 2:
        return "", ""
    return "_".join(parts[:-1]), parts[-1].lower()


def load_config_from_file(path: Path) -> AdvisorConfig:
    """
    Load configuration from a JSON or YAML file.

    Raises:
        ConfigurationError: If the file is missing, unreadable or invalid.
    """
    if not path.exists():
        raise ConfigurationError(f"Config file not found: {path}", config_key=str(path))

    try:
        with open(path) as f:
            if path.suffix in (".yaml", ".yml"):
                data = yaml.safe_load(f)
            else:
                data = json.load(f)
    except (OSError, yaml.YAMLError, json.JSONDecodeError) as e:
        raise ConfigurationError(f"Failed to read config from {path}: {e}") from e

    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ConfigurationError(f"Config file {path} must contain a mapping")

    try:
        return AdvisorConfig(**data)
    except ValidationError as e:
        first = e.errors()[0]
        key = ".".join(str(p) for p in first.get("loc", ()))
        raise ConfigurationError(f"Invalid config in {path}: {e}", config_key=key or None) from e


@lru_cache(maxsize=1)
def get_config() -> AdvisorConfig:
    """
    Get the global configuration instance.

    Loads from:
    1. PLANADVISOR_CONFIG_FILE environment variable (if set)
    2. Environment variables (default)

    Result is cached for the lifetime of the process.
    """
    config_file = os.environ.get("PLANADVISOR_CONFIG_FILE")

    if config_file:
        return load_config_from_file(Path(config_file))

    return load_config_from_env()


def reset_config() -> None:
    """Reset the cached configuration (mainly for testing)."""
    get_config.cache_clear()
