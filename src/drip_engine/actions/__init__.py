"""Actions: typed definitions, the executor and side-effect descriptors."""

from .effects import EffectKind, SideEffect
from .executor import ActionExecutor, ActionOutcome, ActionPlanResult
from .models import (
    ACTION_TYPES,
    Action,
    AddTagAction,
    MoveToSequenceAction,
    RemoveTagAction,
    SendEmailAction,
    StopSequenceAction,
    UpdateFieldAction,
    WaitAction,
    WebhookAction,
    parse_action,
)

__all__ = [
    "ACTION_TYPES",
    "Action",
    "ActionExecutor",
    "ActionOutcome",
    "ActionPlanResult",
    "AddTagAction",
    "EffectKind",
    "MoveToSequenceAction",
    "RemoveTagAction",
    "SendEmailAction",
    "SideEffect",
    "StopSequenceAction",
    "UpdateFieldAction",
    "WaitAction",
    "WebhookAction",
    "parse_action",
]
