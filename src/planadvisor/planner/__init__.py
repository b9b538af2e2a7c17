"""
Planning layer: predicate classification, cost estimation, plan choice.
"""

from planadvisor.planner.classifier import (
    AccessKind,
    NonSargable,
    NonSargableReason,
    PredicateClassifier,
    Sargable,
)
from planadvisor.planner.cost import CostEstimator, JoinEstimate, ScanEstimate
from planadvisor.planner.enumerator import EnumerationResult, JoinFailure, PlanEnumerator
from planadvisor.planner.path import NodePath
from planadvisor.planner.plan import PlanKind, PlanNode, describe, explain
from planadvisor.planner.selectivity import SelectivityEstimator

__all__ = [
    "AccessKind",
    "CostEstimator",
    "EnumerationResult",
    "JoinEstimate",
    "JoinFailure",
    "NodePath",
    "NonSargable",
    "NonSargableReason",
    "PlanEnumerator",
    "PlanKind",
    "PlanNode",
    "PredicateClassifier",
    "Sargable",
    "ScanEstimate",
    "SelectivityEstimator",
    "describe",
    "explain",
]
