"""Drip Engine - rule evaluation and step-graph execution for drip campaigns."""

__version__ = "0.1.0"

from .actions import ActionExecutor, ActionOutcome, EffectKind, SideEffect, parse_action  # noqa: E402
from .campaigns import (  # noqa: E402
    Campaign,
    RunResult,
    StepBudget,
    StepGraphRunner,
    parse_campaign,
)
from .errors import (  # noqa: E402
    DefinitionNotFoundError,
    DripError,
    RunawayGraphError,
    StateError,
    ValidationError,
)
from .rules import (  # noqa: E402
    Condition,
    Rule,
    RulePolicy,
    RuleResult,
    RuleSet,
    evaluate_condition,
    evaluate_rule,
    evaluate_rules,
)
from .service import AutomationService  # noqa: E402
from .state import CampaignStats, ExecutionState, RecipientStatus  # noqa: E402
from .store import CampaignStore  # noqa: E402

__all__ = [
    "__version__",
    "ActionExecutor",
    "ActionOutcome",
    "AutomationService",
    "Campaign",
    "CampaignStats",
    "CampaignStore",
    "Condition",
    "DefinitionNotFoundError",
    "DripError",
    "EffectKind",
    "ExecutionState",
    "RecipientStatus",
    "Rule",
    "RulePolicy",
    "RuleResult",
    "RuleSet",
    "RunResult",
    "RunawayGraphError",
    "SideEffect",
    "StateError",
    "StepBudget",
    "StepGraphRunner",
    "ValidationError",
    "evaluate_condition",
    "evaluate_rule",
    "evaluate_rules",
    "parse_action",
    "parse_campaign",
]
