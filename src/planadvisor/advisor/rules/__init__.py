"""Report rules. Importing this package registers every built-in rule."""

from planadvisor.advisor.rules.base import Rule, RuleSettings
from planadvisor.advisor.rules.covering_index import CoveringIndex
from planadvisor.advisor.rules.foreign_key import UnindexedForeignKey
from planadvisor.advisor.rules.join_feasibility import NoFeasibleJoinStrategy
from planadvisor.advisor.rules.join_order import SuboptimalJoinOrder
from planadvisor.advisor.rules.missing_index import MissingIndex
from planadvisor.advisor.rules.non_sargable import NonSargablePredicate
from planadvisor.advisor.rules.offset_pagination import OffsetPagination
from planadvisor.advisor.rules.spill import SpillRisk
from planadvisor.advisor.rules.stale_statistics import StaleStatistics
from planadvisor.advisor.rules.subquery import SubqueryRewrite
from planadvisor.advisor.rules.truncation import EnumerationTruncated

__all__ = [
    "Rule",
    "RuleSettings",
    # Individual rules
    "CoveringIndex",
    "EnumerationTruncated",
    "MissingIndex",
    "NoFeasibleJoinStrategy",
    "NonSargablePredicate",
    "OffsetPagination",
    "SpillRisk",
    "StaleStatistics",
    "SubqueryRewrite",
    "SuboptimalJoinOrder",
    "UnindexedForeignKey",
]
