"""Rule evaluation.

Each rule is evaluated on its own and statelessly. When several rules apply
to the same trigger, ordering and whether one or all of them run is the
caller's policy, made explicit through :func:`evaluate_rules`.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from drip_engine.actions.models import Action
from drip_engine.utils.timeutil import utcnow

from .conditions import evaluate_condition
from .models import Condition, Rule, RuleStats, parse_rule

logger = logging.getLogger(__name__)


class RulePolicy(str, Enum):
    """How a caller applies several rules to one trigger."""

    FIRST_MATCH = "first_match"
    ALL = "all"


@dataclass(frozen=True)
class RuleResult:
    """Outcome of evaluating one rule.

    ``actions`` is the rule's true path when matched, otherwise its false
    path. Inactive rules are reported with ``skipped=True`` and no actions.
    """

    rule_id: str
    matched: bool
    actions: tuple[Action, ...] = ()
    skipped: bool = False
    condition_results: dict[str, bool] = field(default_factory=dict)


def conditions_hold(
    conditions: Iterable[Condition],
    logic: str,
    facts: Mapping[str, Any],
    now: datetime | None = None,
) -> tuple[bool, dict[str, bool]]:
    """Combine conditions with AND/OR.

    Returns:
        (combined result, condition id -> individual result)
    """
    now = now or utcnow()
    results = {c.id: evaluate_condition(c, facts, now) for c in conditions}

    if not results:
        # No conditions means the rule always applies
        return True, results
    if logic == "AND":
        return all(results.values()), results
    return any(results.values()), results


def evaluate_rule(
    rule: Rule | Mapping[str, Any],
    facts: Mapping[str, Any],
    now: datetime | None = None,
) -> RuleResult:
    """Evaluate a rule against a fact snapshot.

    Args:
        rule: Rule model or raw mapping
        facts: Recipient fact snapshot
        now: Evaluation time for time-based conditions

    Returns:
        RuleResult with the selected action path

    Raises:
        ValidationError: If a raw mapping is not a valid rule
    """
    rule = parse_rule(rule)

    if not rule.is_active:
        logger.debug("Rule %s is inactive, skipping", rule.id)
        return RuleResult(rule_id=rule.id, matched=False, skipped=True)

    matched, results = conditions_hold(rule.conditions, rule.condition_logic, facts, now)

    logger.debug(
        "Rule %s (%s) evaluated %s",
        rule.id,
        rule.condition_logic,
        matched,
        extra={"rule_id": rule.id},
    )
    return RuleResult(
        rule_id=rule.id,
        matched=matched,
        actions=rule.true_actions if matched else rule.false_actions,
        condition_results=results,
    )


def order_rules(rules: Iterable[Rule]) -> list[Rule]:
    """Active rules sorted by ascending priority (ties broken by id)."""
    return sorted((r for r in rules if r.is_active), key=lambda r: (r.priority, r.id))


def evaluate_rules(
    rules: Iterable[Rule],
    facts: Mapping[str, Any],
    now: datetime | None = None,
    policy: RulePolicy | str = RulePolicy.ALL,
) -> list[RuleResult]:
    """Evaluate several rules in priority order under an explicit policy.

    With ``first_match`` evaluation stops at the first rule whose conditions
    hold; rules evaluated before it contribute their false paths. With
    ``all`` every active rule contributes the path it selected.

    Args:
        rules: Candidate rules (inactive ones are ignored)
        facts: Recipient fact snapshot
        now: Evaluation time
        policy: RulePolicy or its string value

    Returns:
        Results in evaluation order
    """
    policy = RulePolicy(policy)
    now = now or utcnow()
    results = []
    for rule in order_rules(rules):
        result = evaluate_rule(rule, facts, now)
        results.append(result)
        if policy is RulePolicy.FIRST_MATCH and result.matched:
            break
    return results


def record_outcome(rule: Rule, result: RuleResult, now: datetime | None = None) -> Rule:
    """Return a copy of ``rule`` with its trigger statistics updated."""
    if result.skipped:
        return rule
    stats = rule.stats
    updated = RuleStats(
        triggered=stats.triggered + 1,
        true_path=stats.true_path + (1 if result.matched else 0),
        false_path=stats.false_path + (0 if result.matched else 1),
        last_triggered=now or utcnow(),
    )
    return rule.model_copy(update={"stats": updated})
