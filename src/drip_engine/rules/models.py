"""Condition and rule definitions."""

from __future__ import annotations

from collections.abc import Mapping
from datetime import datetime, timedelta
from typing import Any, Literal

from pydantic import Field, TypeAdapter, field_validator, model_validator

from drip_engine.actions.models import Action, DurationUnit, check_duration
from drip_engine.schema import DefinitionModel, new_id
from drip_engine.utils.timeutil import duration_delta
from drip_engine.utils.validation import validate_with

ConditionType = Literal["engagement", "behavior", "attribute", "time", "custom"]
Operator = Literal[
    "equals",
    "not_equals",
    "greater_than",
    "less_than",
    "contains",
    "not_contains",
    "exists",
    "not_exists",
]
ConditionLogic = Literal["AND", "OR"]


class Timeframe(DefinitionModel):
    """Relative window for time-based conditions (``7 days``)."""

    amount: float = Field(ge=0)
    unit: DurationUnit

    @model_validator(mode="after")
    def _bounded(self):
        check_duration(self.amount, self.unit, "amount")
        return self

    def to_timedelta(self) -> timedelta:
        return duration_delta(self.amount, self.unit)


class Condition(DefinitionModel):
    """A single test against one fact of a recipient.

    ``timeframe`` is only consulted for ``type="time"``; ``value`` is ignored
    by the ``exists``/``not_exists`` operators.
    """

    id: str = Field(default_factory=lambda: new_id("condition"))
    type: ConditionType = "custom"
    field: str = Field(min_length=1)
    operator: Operator
    value: Any = None
    timeframe: Timeframe | None = None


class RuleStats(DefinitionModel):
    """How often a rule fired and which path it took."""

    triggered: int = 0
    true_path: int = Field(0, alias="truePath")
    false_path: int = Field(0, alias="falsePath")
    last_triggered: datetime | None = Field(None, alias="lastTriggered")


class Rule(DefinitionModel):
    """A branching rule: conditions joined by AND/OR and two action paths."""

    id: str = Field(default_factory=lambda: new_id("rule"))
    name: str = "New Branching Rule"
    description: str = ""
    priority: int = 0
    is_active: bool = Field(True, alias="isActive")
    conditions: tuple[Condition, ...] = ()
    condition_logic: ConditionLogic = Field("AND", alias="conditionLogic")
    true_actions: tuple[Action, ...] = Field((), alias="trueActions")
    false_actions: tuple[Action, ...] = Field((), alias="falseActions")
    stats: RuleStats = Field(default_factory=RuleStats)

    @field_validator("condition_logic", mode="before")
    @classmethod
    def _upper_logic(cls, value: Any) -> Any:
        return value.upper() if isinstance(value, str) else value


_CONDITION_ADAPTER: TypeAdapter[Condition] = TypeAdapter(Condition)
_RULE_ADAPTER: TypeAdapter[Rule] = TypeAdapter(Rule)
_RULE_LIST_ADAPTER: TypeAdapter[list[Rule]] = TypeAdapter(list[Rule])


def parse_condition(data: Condition | Mapping[str, Any]) -> Condition:
    """Build a Condition from a raw mapping, raising ValidationError."""
    if isinstance(data, Condition):
        return data
    return validate_with(_CONDITION_ADAPTER, data, "condition")


def parse_rule(data: Rule | Mapping[str, Any]) -> Rule:
    """Build a Rule from a raw mapping, raising ValidationError."""
    if isinstance(data, Rule):
        return data
    label = "rule"
    if isinstance(data, Mapping) and data.get("name"):
        label = f"rule '{data['name']}'"
    return validate_with(_RULE_ADAPTER, data, label)


def parse_rules(data: list[Any]) -> list[Rule]:
    """Build a list of rules, raising ValidationError on the first bad one."""
    return validate_with(_RULE_LIST_ADAPTER, data, "rule list")
