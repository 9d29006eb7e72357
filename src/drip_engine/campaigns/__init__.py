"""Campaign step graphs and the runner that walks them."""

from .graph import StepGraph
from .guards import SendVerdict, pre_send_decision
from .models import (
    ActionStep,
    Campaign,
    CampaignSettings,
    CampaignStep,
    ConditionStep,
    EmailStep,
    StepConnections,
    WaitStep,
    expand_builder_action,
    expand_builder_condition,
    parse_campaign,
)
from .runner import (
    RunResult,
    StepBudget,
    StepGraphRunner,
    StepTransition,
    condition_context,
)

__all__ = [
    "ActionStep",
    "Campaign",
    "CampaignSettings",
    "CampaignStep",
    "ConditionStep",
    "EmailStep",
    "RunResult",
    "SendVerdict",
    "StepBudget",
    "StepConnections",
    "StepGraph",
    "StepGraphRunner",
    "StepTransition",
    "WaitStep",
    "condition_context",
    "expand_builder_action",
    "expand_builder_condition",
    "parse_campaign",
    "pre_send_decision",
]
