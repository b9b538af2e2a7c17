"""
Rule registry.

Rules register themselves with ``@register_rule`` when their module is
imported; the report builder asks the registry which rules exist. Tests
can build a private RuleRegistry to run a chosen subset.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, TypeVar

if TYPE_CHECKING:
    from planadvisor.advisor.rules.base import Rule

T = TypeVar("T", bound="Rule")


class RuleRegistry:
    """
    Registry of report rule classes, in registration order.

    Example:
        @register_rule
        class SpillRisk(Rule):
            rule_id = "SPILL_RISK"
            ...

        rules = get_registry().filter(exclude={"OFFSET_PAGINATION"})
    """

    def __init__(self) -> None:
        self._rules: dict[str, type[Rule]] = {}

    def register(self, rule_cls: type[T]) -> type[T]:
        """
        Register a rule class.

        Raises:
            ValueError: If another class already registered the same rule ID
        """
        rule_id = rule_cls.rule_id
        if rule_id in self._rules:
            existing = self._rules[rule_id]
            raise ValueError(
                f"Rule '{rule_id}' already registered by {existing.__module__}.{existing.__name__}. "
                f"Cannot register {rule_cls.__module__}.{rule_cls.__name__}"
            )
        self._rules[rule_id] = rule_cls
        return rule_cls

    def unregister(self, rule_id: str) -> bool:
        if rule_id in self._rules:
            del self._rules[rule_id]
            return True
        return False

    def get(self, rule_id: str) -> type[Rule] | None:
        return self._rules.get(rule_id)

    def all(self) -> list[type[Rule]]:
        return list(self._rules.values())

    def all_ids(self) -> list[str]:
        return list(self._rules.keys())

    def filter(
        self,
        include: set[str] | None = None,
        exclude: set[str] | None = None,
    ) -> list[type[Rule]]:
        """Registered rules, restricted to ``include`` and without ``exclude``."""
        rules = self.all()
        if include is not None:
            rules = [r for r in rules if r.rule_id in include]
        if exclude is not None:
            rules = [r for r in rules if r.rule_id not in exclude]
        return rules

    def clear(self) -> None:
        self._rules.clear()

    def __len__(self) -> int:
        return len(self._rules)

    def __contains__(self, rule_id: str) -> bool:
        return rule_id in self._rules


_global_registry = RuleRegistry()


def get_registry() -> RuleRegistry:
    """The registry the built-in rules register with."""
    return _global_registry


def register_rule(rule_cls: type[T]) -> type[T]:
    """Decorator registering a rule with the global registry."""
    return _global_registry.register(rule_cls)
