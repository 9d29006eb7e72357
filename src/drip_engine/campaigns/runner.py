"""Step-graph runner: walks a campaign graph for one recipient.

The runner is a plain loop over the current step id, so a cyclic campaign
can never overflow the stack. Each call to :meth:`StepGraphRunner.advance`
is bounded by a :class:`StepBudget`; a walk that exhausts it raises
:class:`~drip_engine.errors.RunawayGraphError`.
"""

from __future__ import annotations

import logging
import time
from collections import ChainMap
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from drip_engine.actions.effects import SideEffect
from drip_engine.actions.executor import ActionExecutor
from drip_engine.actions.models import SendEmailAction, WaitAction
from drip_engine.errors import RunawayGraphError, StateError
from drip_engine.rules.evaluator import conditions_hold
from drip_engine.state import ExecutionState, RecipientStatus, WaitKind
from drip_engine.utils.timeutil import as_utc, utcnow

from .graph import StepGraph
from .guards import pre_send_decision
from .models import (
    ActionStep,
    Campaign,
    CampaignStep,
    ConditionStep,
    EmailStep,
    WaitStep,
    parse_campaign,
)

logger = logging.getLogger(__name__)

END_OF_SEQUENCE = "end_of_sequence"

Checkpoint = Callable[[ExecutionState], None]


@dataclass(frozen=True)
class StepBudget:
    """Upper bounds for one ``advance`` call.

    Attributes:
        max_steps: Steps that may execute before the walk is aborted
        max_seconds: Wall-clock limit, or None for no limit
    """

    max_steps: int = 100
    max_seconds: float | None = 5.0

    def __post_init__(self):
        if self.max_steps < 1:
            raise ValueError("max_steps must be at least 1")
        if self.max_seconds is not None and self.max_seconds <= 0:
            raise ValueError("max_seconds must be positive")


@dataclass(frozen=True)
class StepTransition:
    """One executed step and where it led."""

    step_id: str
    step_type: str
    outcome: str
    next_step_id: str | None = None


@dataclass(frozen=True)
class RunResult:
    """Final state, side effects and step trail of an ``advance`` call."""

    state: ExecutionState
    effects: tuple[SideEffect, ...] = ()
    transitions: tuple[StepTransition, ...] = ()

    @property
    def steps_taken(self) -> int:
        return len(self.transitions)


@dataclass(frozen=True)
class _StepOutcome:
    state: ExecutionState
    effects: tuple[SideEffect, ...]
    transition: StepTransition


def condition_context(state: ExecutionState, facts: Mapping[str, Any]) -> ChainMap:
    """Facts first, then the recipient's own tags and fields.

    A fact whose value is None counts as absent and does not hide a field.
    """
    own: dict[str, Any] = dict(state.fields)
    own["tags"] = sorted(state.tags)
    present = {key: value for key, value in facts.items() if value is not None}
    return ChainMap(present, own)


class StepGraphRunner:
    """Drives recipients through campaign step graphs."""

    def __init__(
        self,
        executor: ActionExecutor | None = None,
        budget: StepBudget | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """Initialize the runner.

        Args:
            executor: Action executor for email and action steps
            budget: Default budget when ``advance`` is not given one
            clock: Monotonic clock used for the wall-clock budget
        """
        self.executor = executor or ActionExecutor()
        self.budget = budget or StepBudget()
        self._clock = clock
        self._handlers: dict[str, Callable[..., _StepOutcome]] = {
            "email": self._run_email,
            "wait": self._run_wait,
            "condition": self._run_condition,
            "action": self._run_action,
        }

    def start(
        self,
        campaign: Campaign | Mapping[str, Any],
        recipient_id: str,
        now: datetime | None = None,
        tags: frozenset[str] | set[str] = frozenset(),
        fields: Mapping[str, Any] | None = None,
    ) -> ExecutionState:
        """Create a recipient's state at the campaign's start step.

        A campaign without steps yields an already completed state.
        """
        campaign = parse_campaign(campaign)
        now = as_utc(now) if now else utcnow()
        start_step = StepGraph(campaign).start_step_id()

        state = ExecutionState(
            recipient_id=recipient_id,
            campaign_id=campaign.id,
            current_step_id=start_step,
            tags=frozenset(tags),
            fields=dict(fields or {}),
            entered_at=now,
        )
        if start_step is None:
            state = state.evolve(
                status=RecipientStatus.COMPLETED, status_reason=END_OF_SEQUENCE, finished_at=now
            )

        logger.info(
            "Enrolled %s in campaign %s at step %s",
            recipient_id,
            campaign.id,
            start_step,
            extra={"recipient_id": recipient_id, "campaign_id": campaign.id, "step_id": start_step},
        )
        return state

    def advance(
        self,
        campaign: Campaign | Mapping[str, Any],
        state: ExecutionState,
        facts: Mapping[str, Any] | None = None,
        now: datetime | None = None,
        budget: StepBudget | None = None,
        checkpoint: Checkpoint | None = None,
    ) -> RunResult:
        """Process steps until the recipient waits, stops or completes.

        Args:
            campaign: Campaign definition the state belongs to
            state: Recipient's current execution state
            facts: Recipient fact snapshot for conditions and guards
            now: Evaluation time (defaults to UTC now)
            budget: Step and wall-clock limits for this call
            checkpoint: Called with the new state after every step

        Returns:
            RunResult with the final state and side effects in order

        Raises:
            StateError: If the state belongs to another campaign or points
                at a step the campaign does not have
            RunawayGraphError: If the budget is exhausted
        """
        campaign = parse_campaign(campaign)
        if state.campaign_id != campaign.id:
            raise StateError(
                f"State for campaign {state.campaign_id} cannot advance in campaign {campaign.id}",
                recipient_id=state.recipient_id,
                campaign_id=campaign.id,
            )

        facts = facts or {}
        now = as_utc(now) if now else utcnow()
        budget = budget or self.budget
        graph = StepGraph(campaign)

        if state.is_finished or state.status == RecipientStatus.PAUSED:
            return RunResult(state)

        if state.status == RecipientStatus.WAITING:
            if not state.is_due(now):
                return RunResult(state)
            state = self._stamp_finish(self._resume(graph, state), now)
            if checkpoint:
                checkpoint(state)
            if state.status != RecipientStatus.ACTIVE or state.current_step_id is None:
                return RunResult(state)

        if state.current_step_id is None:
            raise StateError(
                f"Active state for {state.recipient_id} has no current step",
                recipient_id=state.recipient_id,
                campaign_id=campaign.id,
            )

        effects: list[SideEffect] = []
        transitions: list[StepTransition] = []
        # Last state handed to the checkpoint callback
        saved = state
        deadline = self._clock() + budget.max_seconds if budget.max_seconds else None

        while state.status == RecipientStatus.ACTIVE:
            executed = len(transitions)
            if executed >= budget.max_steps or (deadline is not None and self._clock() >= deadline):
                logger.warning(
                    "Campaign %s exhausted its step budget at %s after %d steps",
                    campaign.id,
                    state.current_step_id,
                    executed,
                    extra={
                        "recipient_id": state.recipient_id,
                        "campaign_id": campaign.id,
                        "step_id": state.current_step_id,
                    },
                )
                raise RunawayGraphError(
                    f"Step budget exhausted in campaign {campaign.id} "
                    f"at step {state.current_step_id} after {executed} steps",
                    step_id=state.current_step_id,
                    steps_taken=executed,
                    state=saved,
                    effects=effects,
                )

            step = graph.step(state.current_step_id)
            outcome = self._handlers[step.type](step, state, facts, now, campaign)
            state = self._stamp_finish(outcome.state, now)
            effects.extend(outcome.effects)
            transitions.append(outcome.transition)

            logger.debug(
                "Step %s (%s) -> %s",
                step.id,
                step.type,
                outcome.transition.outcome,
                extra={
                    "recipient_id": state.recipient_id,
                    "campaign_id": campaign.id,
                    "step_id": step.id,
                },
            )
            if checkpoint:
                checkpoint(state)
            saved = state

        if state.status != RecipientStatus.WAITING:
            logger.info(
                "Recipient %s %s campaign %s (%s)",
                state.recipient_id,
                state.status.value,
                campaign.id,
                state.status_reason,
                extra={"recipient_id": state.recipient_id, "campaign_id": campaign.id},
            )
        return RunResult(state, tuple(effects), tuple(transitions))

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def _resume(self, graph: StepGraph, state: ExecutionState) -> ExecutionState:
        """Wake a due waiting state.

        Only waits the runner parked after executing a wait or action step
        (``WaitKind.STEP``) continue along that step's ``next`` edge. Throttled
        sends and waits started outside the walk re-run the current step,
        which may not have executed yet.
        """
        woken = state.evolve(
            status=RecipientStatus.ACTIVE, resume_at=None, wait_kind=None, status_reason=None
        )
        if state.current_step_id is None or state.wait_kind != WaitKind.STEP:
            return woken
        step = graph.step(state.current_step_id)
        if step.type not in ("wait", "action"):
            return woken
        return self._follow(woken, step.edge_for())

    @staticmethod
    def _stamp_finish(state: ExecutionState, now: datetime) -> ExecutionState:
        if state.is_finished and state.finished_at is None:
            return state.evolve(finished_at=now)
        return state

    @staticmethod
    def _follow(state: ExecutionState, target: str | None) -> ExecutionState:
        if target is None:
            return state.evolve(
                status=RecipientStatus.COMPLETED,
                current_step_id=None,
                status_reason=END_OF_SEQUENCE,
            )
        return state.evolve(current_step_id=target)

    def _finish_step(
        self,
        step: CampaignStep,
        state: ExecutionState,
        effects: tuple[SideEffect, ...],
        outcome: str,
        target: str | None,
    ) -> _StepOutcome:
        state = self._follow(state, target)
        return _StepOutcome(
            state, effects, StepTransition(step.id, step.type, outcome, state.current_step_id)
        )

    def _park(
        self, step: CampaignStep, state: ExecutionState, effects: tuple[SideEffect, ...], outcome: str
    ) -> _StepOutcome:
        return _StepOutcome(state, effects, StepTransition(step.id, step.type, outcome, step.id))

    # ------------------------------------------------------------------
    # Step handlers
    # ------------------------------------------------------------------

    def _run_email(
        self,
        step: EmailStep,
        state: ExecutionState,
        facts: Mapping[str, Any],
        now: datetime,
        campaign: Campaign,
    ) -> _StepOutcome:
        verdict = pre_send_decision(campaign.settings, state, facts, now)
        if verdict.is_final:
            stopped = state.evolve(
                status=RecipientStatus.STOPPED,
                current_step_id=None,
                status_reason=verdict.reason,
            )
            return _StepOutcome(stopped, (), StepTransition(step.id, step.type, verdict.reason))
        if not verdict.allow:
            parked = state.evolve(
                status=RecipientStatus.WAITING,
                resume_at=verdict.resume_at,
                wait_kind=WaitKind.THROTTLE,
                status_reason=verdict.reason,
            )
            return self._park(step, parked, (), verdict.reason)

        action = SendEmailAction(
            id=step.id,
            data={
                "templateId": step.data.template_id,
                "subject": step.data.subject,
                "message": step.data.message,
            },
        )
        outcome = self.executor.execute(action, state, now)
        return self._finish_step(step, outcome.state, outcome.effects, "sent", step.edge_for())

    def _run_wait(
        self,
        step: WaitStep,
        state: ExecutionState,
        facts: Mapping[str, Any],
        now: datetime,
        campaign: Campaign,
    ) -> _StepOutcome:
        action = WaitAction(
            id=step.id,
            data={"duration": step.data.wait_duration, "durationUnit": step.data.wait_unit},
        )
        outcome = self.executor.execute(action, state, now)
        parked = outcome.state.evolve(wait_kind=WaitKind.STEP)
        return self._park(step, parked, outcome.effects, "waiting")

    def _run_condition(
        self,
        step: ConditionStep,
        state: ExecutionState,
        facts: Mapping[str, Any],
        now: datetime,
        campaign: Campaign,
    ) -> _StepOutcome:
        matched, _ = conditions_hold(
            step.data.conditions,
            step.data.condition_logic,
            condition_context(state, facts),
            now,
        )
        return self._finish_step(step, state, (), "yes" if matched else "no", step.edge_for(matched))

    def _run_action(
        self,
        step: ActionStep,
        state: ExecutionState,
        facts: Mapping[str, Any],
        now: datetime,
        campaign: Campaign,
    ) -> _StepOutcome:
        outcome = self.executor.execute(step.data.action, state, now)
        new_state = outcome.state

        if new_state.status == RecipientStatus.WAITING:
            # A wait action parks at this step and resumes along its next edge
            parked = new_state.evolve(wait_kind=WaitKind.STEP)
            return self._park(step, parked, outcome.effects, "waiting")
        if new_state.status != RecipientStatus.ACTIVE:
            return _StepOutcome(
                new_state,
                outcome.effects,
                StepTransition(step.id, step.type, new_state.status.value),
            )
        return self._finish_step(step, new_state, outcome.effects, step.data.action.type, step.edge_for())
