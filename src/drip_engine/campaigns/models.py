"""Data models for drip campaign step graphs.

A campaign is a set of steps connected by typed edges. Condition steps
branch on ``yes``/``no``; every other step continues on ``next``. A step with
no edge for its outcome is terminal.

Step payloads accept the visual builder's shorthand (``{"type": "opened"}``
for a condition, ``{"type": "add_tag", "value": "vip"}`` for an action) and
expand it into full conditions and actions at construction.
"""

from __future__ import annotations

from collections.abc import Mapping
from datetime import datetime
from typing import Annotated, Any, Literal, Union

from pydantic import Field, TypeAdapter, field_validator, model_validator
from pydantic_core import PydanticCustomError

from drip_engine.actions.models import Action, DurationUnit, check_duration
from drip_engine.rules.models import Condition, ConditionLogic
from drip_engine.schema import DefinitionModel, new_id
from drip_engine.utils.validation import validate_with

CampaignStatus = Literal["draft", "active", "paused", "completed"]
EdgeKind = Literal["next", "yes", "no"]

# Builder condition kinds backed by an engagement fact
_BUILDER_ENGAGEMENT_FACTS = {
    "opened": "email_opened",
    "clicked": "link_clicked",
    "replied": "email_replied",
}

_NEGATED_OPERATORS = frozenset({"not_equals", "not_contains"})


def expand_builder_condition(raw: Mapping[str, Any]) -> dict[str, Any]:
    """Expand a builder shorthand condition into a full condition mapping."""
    kind = raw.get("type")
    operator = raw.get("operator") or "equals"

    if kind in _BUILDER_ENGAGEMENT_FACTS:
        return {
            "type": "engagement",
            "field": _BUILDER_ENGAGEMENT_FACTS[kind],
            "operator": operator,
            "value": raw.get("value", True),
        }
    if kind == "tag":
        return {
            "type": "custom",
            "field": "tags",
            "operator": "not_contains" if operator in _NEGATED_OPERATORS else "contains",
            "value": raw.get("value"),
        }
    return dict(raw)


def expand_builder_action(raw: Mapping[str, Any]) -> dict[str, Any]:
    """Expand a builder shorthand action (``{"type", "value"}``) into a full action."""
    if "data" in raw or "value" not in raw:
        return dict(raw)

    kind = raw.get("type")
    value = raw.get("value")
    expanded = {k: v for k, v in raw.items() if k != "value"}

    if kind in ("add_tag", "remove_tag"):
        expanded["data"] = {"tagName": value}
    elif kind == "webhook":
        expanded["data"] = {"webhookUrl": value}
    elif kind == "update_field":
        name, sep, field_value = str(value or "").partition("=")
        expanded["data"] = {"fieldName": name.strip()}
        if sep:
            expanded["data"]["fieldValue"] = field_value.strip()
    elif kind == "move_to_sequence":
        expanded["data"] = {"sequenceId": value}
    elif kind == "send_email":
        expanded["data"] = {"templateId": value}
    return expanded


class StepConnections(DefinitionModel):
    """Outgoing edges of a step."""

    next: str | None = None
    yes: str | None = None
    no: str | None = None

    def targets(self) -> dict[str, str]:
        """Edge kind -> target step id for the edges that are set."""
        return {
            kind: target
            for kind, target in (("next", self.next), ("yes", self.yes), ("no", self.no))
            if target
        }


class _StepData(DefinitionModel):
    name: str = ""
    description: str | None = None


class EmailStepData(_StepData):
    template_id: str = Field(alias="templateId", min_length=1)
    subject: str | None = None
    message: str | None = None


class WaitStepData(_StepData):
    wait_duration: float = Field(alias="waitDuration", ge=0)
    wait_unit: DurationUnit = Field("days", alias="waitUnit")

    @model_validator(mode="after")
    def _bounded(self):
        check_duration(self.wait_duration, self.wait_unit, "waitDuration")
        return self


class ConditionStepData(_StepData):
    conditions: tuple[Condition, ...] = Field(min_length=1)
    condition_logic: ConditionLogic = Field("AND", alias="conditionLogic")

    @model_validator(mode="before")
    @classmethod
    def _expand_shorthand(cls, value: Any) -> Any:
        if not isinstance(value, Mapping):
            return value
        data = dict(value)
        single = data.pop("condition", None)
        if single is not None and not data.get("conditions"):
            data["conditions"] = [expand_builder_condition(single)]
        return data

    @field_validator("condition_logic", mode="before")
    @classmethod
    def _upper_logic(cls, value: Any) -> Any:
        return value.upper() if isinstance(value, str) else value


class ActionStepData(_StepData):
    action: Action

    @model_validator(mode="before")
    @classmethod
    def _expand_shorthand(cls, value: Any) -> Any:
        if isinstance(value, Mapping) and isinstance(value.get("action"), Mapping):
            return {**value, "action": expand_builder_action(value["action"])}
        return value


class _StepBase(DefinitionModel):
    id: str = Field(min_length=1)
    connections: StepConnections = Field(default_factory=StepConnections)
    # Canvas coordinates, kept only so stored records round-trip
    position: dict[str, float] | None = None

    @model_validator(mode="after")
    def _check_edge_kinds(self):
        conns = self.connections
        if self.type == "condition":
            if conns.next:
                raise PydanticCustomError(
                    "edge_kind",
                    "condition step {step_id} must use yes/no edges, not next",
                    {"field": "next", "step_id": self.id},
                )
        elif conns.yes or conns.no:
            raise PydanticCustomError(
                "edge_kind",
                "{step_type} step {step_id} must use a next edge, not yes/no",
                {"field": "yes" if conns.yes else "no", "step_id": self.id, "step_type": self.type},
            )
        return self

    def edge_for(self, outcome: bool | None = None) -> str | None:
        """Target step id for an outcome (True/False for condition steps)."""
        if self.type == "condition":
            return self.connections.yes if outcome else self.connections.no
        return self.connections.next


class EmailStep(_StepBase):
    type: Literal["email"] = "email"
    data: EmailStepData


class WaitStep(_StepBase):
    type: Literal["wait"] = "wait"
    data: WaitStepData


class ConditionStep(_StepBase):
    type: Literal["condition"] = "condition"
    data: ConditionStepData


class ActionStep(_StepBase):
    type: Literal["action"] = "action"
    data: ActionStepData


CampaignStep = Annotated[
    Union[EmailStep, WaitStep, ConditionStep, ActionStep],
    Field(discriminator="type"),
]


class CampaignSettings(DefinitionModel):
    """Delivery settings from the campaign builder."""

    start_trigger: Literal["manual", "form_submit", "tag_added", "date"] = Field(
        "manual", alias="startTrigger"
    )
    start_date: datetime | None = Field(None, alias="startDate")
    timezone: str = "UTC"
    send_time_optimization: bool = Field(True, alias="sendTimeOptimization")
    respect_unsubscribes: bool = Field(True, alias="respectUnsubscribes")
    # None disables the cap
    max_emails_per_day: int | None = Field(10, alias="maxEmailsPerDay", ge=1)


class Campaign(DefinitionModel):
    """A drip campaign: step graph plus settings."""

    id: str = Field(default_factory=lambda: new_id("campaign"))
    name: str = Field(min_length=1)
    description: str = ""
    status: CampaignStatus = "draft"
    steps: tuple[CampaignStep, ...] = ()
    start_step_id: str | None = Field(None, alias="startStepId")
    settings: CampaignSettings = Field(default_factory=CampaignSettings)

    @model_validator(mode="after")
    def _check_graph(self):
        seen: set[str] = set()
        for step in self.steps:
            if step.id in seen:
                raise PydanticCustomError(
                    "duplicate_step", "duplicate step id {step_id}", {"field": "id", "step_id": step.id}
                )
            seen.add(step.id)

        for step in self.steps:
            for kind, target in step.connections.targets().items():
                if target not in seen:
                    raise PydanticCustomError(
                        "dangling_edge",
                        "step {step_id} has a {kind} edge to unknown step {target}",
                        {"field": kind, "step_id": step.id, "kind": kind, "target": target},
                    )

        if self.start_step_id is not None and self.start_step_id not in seen:
            raise PydanticCustomError(
                "unknown_start",
                "start step {step_id} is not part of the campaign",
                {"field": "startStepId", "step_id": self.start_step_id},
            )
        return self

    def get_step(self, step_id: str) -> CampaignStep | None:
        """Get a step by ID."""
        for step in self.steps:
            if step.id == step_id:
                return step
        return None


_CAMPAIGN_ADAPTER: TypeAdapter[Campaign] = TypeAdapter(Campaign)


def parse_campaign(data: Campaign | Mapping[str, Any]) -> Campaign:
    """Build a Campaign from a raw mapping, raising ValidationError."""
    if isinstance(data, Campaign):
        return data
    label = "campaign"
    if isinstance(data, Mapping) and data.get("name"):
        label = f"campaign '{data['name']}'"
    return validate_with(_CAMPAIGN_ADAPTER, data, label)
