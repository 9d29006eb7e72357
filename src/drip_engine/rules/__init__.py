"""Branching rules: conditions, AND/OR evaluation and action path selection."""

from .conditions import evaluate_condition
from .evaluator import (
    RulePolicy,
    RuleResult,
    conditions_hold,
    evaluate_rule,
    evaluate_rules,
    order_rules,
    record_outcome,
)
from .models import (
    Condition,
    Rule,
    RuleStats,
    Timeframe,
    parse_condition,
    parse_rule,
    parse_rules,
)
from .ruleset import RuleSet

__all__ = [
    "Condition",
    "Rule",
    "RuleStats",
    "RuleSet",
    "RulePolicy",
    "RuleResult",
    "Timeframe",
    "conditions_hold",
    "evaluate_condition",
    "evaluate_rule",
    "evaluate_rules",
    "order_rules",
    "parse_condition",
    "parse_rule",
    "parse_rules",
    "record_outcome",
]
