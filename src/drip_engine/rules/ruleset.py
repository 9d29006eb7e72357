"""In-memory collection of branching rules with the editor operations."""

from __future__ import annotations

from collections.abc import Iterable, Iterator

from drip_engine.errors import DefinitionNotFoundError
from drip_engine.schema import new_id

from .evaluator import order_rules
from .models import Rule


class RuleSet:
    """Ordered set of rules keyed by id.

    Rules are immutable, so every edit replaces the stored rule.
    """

    def __init__(self, rules: Iterable[Rule] = ()):
        self._rules: dict[str, Rule] = {}
        for rule in rules:
            self._rules[rule.id] = rule

    def __len__(self) -> int:
        return len(self._rules)

    def __iter__(self) -> Iterator[Rule]:
        return iter(self._rules.values())

    def __contains__(self, rule_id: object) -> bool:
        return rule_id in self._rules

    def get(self, rule_id: str) -> Rule:
        try:
            return self._rules[rule_id]
        except KeyError:
            raise DefinitionNotFoundError(
                f"Rule not found: {rule_id}", kind="rule", definition_id=rule_id
            ) from None

    def upsert(self, rule: Rule) -> Rule:
        """Insert or replace a rule."""
        self._rules[rule.id] = rule
        return rule

    def remove(self, rule_id: str) -> Rule:
        rule = self.get(rule_id)
        del self._rules[rule_id]
        return rule

    def next_priority(self) -> int:
        """Priority that places a new rule after every existing one."""
        return max((r.priority for r in self._rules.values()), default=0) + 1

    def duplicate(self, rule_id: str) -> Rule:
        """Copy a rule under a new id, placed last, with fresh stats."""
        source = self.get(rule_id)
        copy = Rule(
            id=new_id("rule"),
            name=f"{source.name} (Copy)",
            description=source.description,
            priority=self.next_priority(),
            is_active=source.is_active,
            conditions=source.conditions,
            condition_logic=source.condition_logic,
            true_actions=source.true_actions,
            false_actions=source.false_actions,
        )
        return self.upsert(copy)

    def toggle(self, rule_id: str) -> Rule:
        """Flip a rule between active and inactive."""
        rule = self.get(rule_id)
        return self.upsert(rule.model_copy(update={"is_active": not rule.is_active}))

    def ordered(self) -> list[Rule]:
        """Active rules in evaluation order."""
        return order_rules(self._rules.values())
