"""Action definitions.

An action is a tagged union keyed by ``type``. Each variant carries only the
fields its type needs, and the fields are checked when the action is built,
so a ``send_email`` without a template fails before anything is executed.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Annotated, Any, Literal, Union

from pydantic import Field, TypeAdapter, field_validator, model_validator
from pydantic_core import PydanticCustomError

from drip_engine.schema import DefinitionModel, new_id
from drip_engine.utils.timeutil import MAX_DURATION, duration_seconds
from drip_engine.utils.validation import validate_with

DurationUnit = Literal["minutes", "hours", "days", "weeks"]


def check_duration(amount: float, unit: str, field: str) -> None:
    """Reject durations longer than ``MAX_DURATION``."""
    if not duration_seconds(amount, unit) <= MAX_DURATION.total_seconds():
        raise PydanticCustomError(
            "duration_too_long",
            "{field} must be at most {max_days} days",
            {"field": field, "max_days": MAX_DURATION.days},
        )


ACTION_TYPES = (
    "send_email",
    "wait",
    "add_tag",
    "remove_tag",
    "update_field",
    "webhook",
    "stop_sequence",
    "move_to_sequence",
)


class _ActionBase(DefinitionModel):
    id: str = Field(default_factory=lambda: new_id("action"))

    @model_validator(mode="before")
    @classmethod
    def _default_data(cls, value: Any) -> Any:
        # An omitted data block is reported as the first missing data field
        if isinstance(value, Mapping) and value.get("data") is None:
            return {**value, "data": {}}
        return value


class SendEmailData(DefinitionModel):
    template_id: str = Field(alias="templateId", min_length=1)
    subject: str | None = None
    message: str | None = None


class WaitData(DefinitionModel):
    duration: float = Field(ge=0)
    duration_unit: DurationUnit = Field(alias="durationUnit")

    @model_validator(mode="after")
    def _bounded(self):
        check_duration(self.duration, self.duration_unit, "duration")
        return self


class TagData(DefinitionModel):
    tag_name: str = Field(alias="tagName", min_length=1)


class UpdateFieldData(DefinitionModel):
    field_name: str = Field(alias="fieldName", min_length=1)
    field_value: Any = Field(alias="fieldValue")


class WebhookData(DefinitionModel):
    webhook_url: str = Field(alias="webhookUrl", min_length=1)
    payload: dict[str, Any] = Field(default_factory=dict)

    @field_validator("webhook_url")
    @classmethod
    def _check_scheme(cls, value: str) -> str:
        if not value.startswith(("http://", "https://")):
            raise ValueError("webhookUrl must be an http(s) URL")
        return value


class StopSequenceData(DefinitionModel):
    pass


class MoveToSequenceData(DefinitionModel):
    sequence_id: str = Field(alias="sequenceId", min_length=1)


class SendEmailAction(_ActionBase):
    type: Literal["send_email"] = "send_email"
    data: SendEmailData


class WaitAction(_ActionBase):
    type: Literal["wait"] = "wait"
    data: WaitData


class AddTagAction(_ActionBase):
    type: Literal["add_tag"] = "add_tag"
    data: TagData


class RemoveTagAction(_ActionBase):
    type: Literal["remove_tag"] = "remove_tag"
    data: TagData


class UpdateFieldAction(_ActionBase):
    type: Literal["update_field"] = "update_field"
    data: UpdateFieldData


class WebhookAction(_ActionBase):
    type: Literal["webhook"] = "webhook"
    data: WebhookData


class StopSequenceAction(_ActionBase):
    type: Literal["stop_sequence"] = "stop_sequence"
    data: StopSequenceData = Field(default_factory=StopSequenceData)


class MoveToSequenceAction(_ActionBase):
    type: Literal["move_to_sequence"] = "move_to_sequence"
    data: MoveToSequenceData


Action = Annotated[
    Union[
        SendEmailAction,
        WaitAction,
        AddTagAction,
        RemoveTagAction,
        UpdateFieldAction,
        WebhookAction,
        StopSequenceAction,
        MoveToSequenceAction,
    ],
    Field(discriminator="type"),
]

_ACTION_ADAPTER: TypeAdapter[Action] = TypeAdapter(Action)
_ACTION_CLASSES = (
    SendEmailAction,
    WaitAction,
    AddTagAction,
    RemoveTagAction,
    UpdateFieldAction,
    WebhookAction,
    StopSequenceAction,
    MoveToSequenceAction,
)


def parse_action(data: Action | Mapping[str, Any]) -> Action:
    """Build an action from a raw mapping.

    Args:
        data: Action mapping (``{"type": ..., "data": {...}}``) or an
            already-validated action

    Returns:
        The typed action variant

    Raises:
        ValidationError: If the type is unknown or a required field is missing
    """
    if isinstance(data, _ACTION_CLASSES):
        return data
    kind = "action"
    if isinstance(data, Mapping) and data.get("type"):
        kind = f"{data['type']} action"
    return validate_with(_ACTION_ADAPTER, data, kind)
