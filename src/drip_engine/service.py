"""Automation service: ties the evaluators and runner to the store.

The service is what a scheduler or an event consumer calls. It loads
definitions and state, runs the pure engine components, and checkpoints
every step back into the store. Dispatching the returned side effects
(sending mail, calling webhooks) stays with the caller.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from drip_engine.actions.effects import SideEffect
from drip_engine.actions.executor import ActionExecutor
from drip_engine.actions.models import Action
from drip_engine.campaigns.models import Campaign
from drip_engine.campaigns.runner import RunResult, StepBudget, StepGraphRunner, condition_context
from drip_engine.config.settings import Settings, get_settings
from drip_engine.errors import DripError, StateError
from drip_engine.rules.evaluator import RulePolicy, RuleResult, evaluate_rules, record_outcome
from drip_engine.state import ExecutionState, RecipientStatus, WaitKind
from drip_engine.store.repository import CampaignStore
from drip_engine.utils.timeutil import as_utc, utcnow

logger = logging.getLogger(__name__)

FactsProvider = Callable[[ExecutionState], Mapping[str, Any]]


@dataclass(frozen=True)
class RuleApplication:
    """Outcome of applying the stored rules to one recipient."""

    state: ExecutionState
    results: tuple[RuleResult, ...] = ()
    effects: tuple[SideEffect, ...] = ()
    # Actions not run because an earlier one parked or finished the recipient
    remaining: tuple[Action, ...] = ()


@dataclass
class DueRunReport:
    """Results of one scheduler tick."""

    results: list[RunResult] = field(default_factory=list)
    failures: dict[tuple[str, str], DripError] = field(default_factory=dict)

    @property
    def effects(self) -> list[SideEffect]:
        return [effect for result in self.results for effect in result.effects]


class AutomationService:
    """Enrolment, resumption and rule application backed by a CampaignStore."""

    def __init__(
        self,
        store: CampaignStore | None = None,
        settings: Settings | None = None,
        executor: ActionExecutor | None = None,
    ):
        """Initialize the service.

        Args:
            store: Definition and state store (built from settings if omitted)
            settings: Engine settings (cached settings if omitted)
            executor: Action executor shared with the runner
        """
        self.settings = settings or get_settings()
        self.store = store or CampaignStore(self.settings.database_url)
        self.executor = executor or ActionExecutor()
        self.runner = StepGraphRunner(executor=self.executor, budget=self.budget)

    @property
    def budget(self) -> StepBudget:
        return StepBudget(
            max_steps=self.settings.max_steps_per_run,
            max_seconds=self.settings.max_seconds_per_run,
        )

    def _campaign(self, campaign_id: str) -> Campaign:
        """Stored campaign with the engine-wide delivery policy applied.

        The configured policy is a floor campaigns cannot loosen: unsubscribes
        are honoured if either side asks for it, and the stricter daily cap wins.
        """
        campaign = self.store.get_campaign(campaign_id)
        delivery = campaign.settings
        caps = [c for c in (delivery.max_emails_per_day, self.settings.max_emails_per_day) if c]
        policy = {
            "respect_unsubscribes": delivery.respect_unsubscribes
            or self.settings.respect_unsubscribes,
            "max_emails_per_day": min(caps) if caps else None,
        }
        if all(getattr(delivery, name) == value for name, value in policy.items()):
            return campaign
        return campaign.model_copy(update={"settings": delivery.model_copy(update=policy)})

    def enroll(
        self,
        campaign_id: str,
        recipient_id: str,
        facts: Mapping[str, Any] | None = None,
        now: datetime | None = None,
        tags: Iterable[str] = (),
        fields: Mapping[str, Any] | None = None,
    ) -> RunResult:
        """Enroll a recipient and run the campaign until it waits or ends.

        A recipient whose previous run finished may enroll again.

        Raises:
            DefinitionNotFoundError: If the campaign is not stored
            StateError: If the campaign is not active or the recipient is
                already in progress
            RunawayGraphError: If the step budget is exhausted (the last
                checkpointed state is already saved)
        """
        now = as_utc(now) if now else utcnow()
        campaign = self._campaign(campaign_id)
        if campaign.status != "active":
            raise StateError(
                f"Campaign {campaign_id} is {campaign.status}, not accepting enrollments",
                campaign_id=campaign_id,
                status=campaign.status,
            )

        existing = self.store.load_state(recipient_id, campaign_id)
        if existing is not None and not existing.is_finished:
            raise StateError(
                f"Recipient {recipient_id} is already enrolled in campaign {campaign_id}",
                recipient_id=recipient_id,
                campaign_id=campaign_id,
            )

        state = self.runner.start(campaign, recipient_id, now, tags=frozenset(tags), fields=fields)
        self.store.save_state(state)
        return self.runner.advance(
            campaign, state, facts, now, budget=self.budget, checkpoint=self.store.save_state
        )

    def resume(
        self,
        recipient_id: str,
        campaign_id: str,
        facts: Mapping[str, Any] | None = None,
        now: datetime | None = None,
    ) -> RunResult:
        """Continue a recipient's run.

        Paused recipients, and recipients of paused or completed campaigns,
        are left where they are.

        Raises:
            DefinitionNotFoundError: If the campaign is not stored
            StateError: If the recipient is not enrolled
            RunawayGraphError: If the step budget is exhausted
        """
        now = as_utc(now) if now else utcnow()
        state = self.store.require_state(recipient_id, campaign_id)
        campaign = self._campaign(campaign_id)
        if campaign.status != "active":
            logger.debug(
                "Campaign %s is %s, not resuming %s",
                campaign_id,
                campaign.status,
                recipient_id,
                extra={"recipient_id": recipient_id, "campaign_id": campaign_id},
            )
            return RunResult(state)
        return self.runner.advance(
            campaign, state, facts, now, budget=self.budget, checkpoint=self.store.save_state
        )

    def resume_due(
        self,
        now: datetime | None = None,
        facts_for: FactsProvider | None = None,
        limit: int | None = None,
    ) -> DueRunReport:
        """Resume every waiting recipient whose ``resumeAt`` has passed.

        A failure for one recipient is logged and reported without stopping
        the rest of the tick.

        Args:
            now: Tick time
            facts_for: Returns the fact snapshot for a state
            limit: Maximum number of states to resume in this tick
        """
        now = as_utc(now) if now else utcnow()
        report = DueRunReport()
        for state in self.store.due_states(now, limit=limit):
            facts = facts_for(state) if facts_for else {}
            try:
                report.results.append(
                    self.resume(state.recipient_id, state.campaign_id, facts, now)
                )
            except DripError as e:
                logger.error(
                    "Failed to resume %s in %s: %s",
                    state.recipient_id,
                    state.campaign_id,
                    e.message,
                    extra={"recipient_id": state.recipient_id, "campaign_id": state.campaign_id},
                )
                report.failures[state.key] = e
        if report.results or report.failures:
            logger.info(
                "Resumed %d due recipient(s), %d failure(s)",
                len(report.results),
                len(report.failures),
            )
        return report

    def apply_rules(
        self,
        recipient_id: str,
        campaign_id: str,
        facts: Mapping[str, Any] | None = None,
        now: datetime | None = None,
        policy: RulePolicy | str = RulePolicy.ALL,
    ) -> RuleApplication:
        """Evaluate the stored rules for a recipient and run the chosen actions.

        Rules see the facts first, then the recipient's tags and fields.
        Trigger statistics of every evaluated rule are updated.

        Raises:
            StateError: If the recipient is not enrolled, paused or finished
            ValidationError: If a chosen action is malformed (nothing is saved)
        """
        now = as_utc(now) if now else utcnow()
        state = self.store.require_state(recipient_id, campaign_id)
        if state.is_finished or state.status == RecipientStatus.PAUSED:
            raise StateError(
                f"Recipient {recipient_id} is {state.status.value} in campaign {campaign_id}",
                recipient_id=recipient_id,
                campaign_id=campaign_id,
                status=state.status.value,
            )

        rules = self.store.list_rules(active_only=True)
        results = evaluate_rules(rules, condition_context(state, facts or {}), now, policy)
        actions = [action for result in results for action in result.actions]
        plan = self.executor.execute_all(actions, state, now)
        new_state = plan.state
        if new_state.wait_kind == WaitKind.ACTION and state.wait_kind == WaitKind.STEP:
            # The parked step already ran, so the rule's wait still resumes past it
            new_state = new_state.evolve(wait_kind=WaitKind.STEP)

        self.store.save_state(new_state)
        by_id = {rule.id: rule for rule in rules}
        for result in results:
            self.store.save_rule(record_outcome(by_id[result.rule_id], result, now))

        if plan.remaining:
            logger.info(
                "%d rule action(s) not run for %s after status became %s",
                len(plan.remaining),
                recipient_id,
                new_state.status.value,
                extra={"recipient_id": recipient_id, "campaign_id": campaign_id},
            )
        return RuleApplication(
            state=new_state,
            results=tuple(results),
            effects=plan.effects,
            remaining=plan.remaining,
        )

    # ------------------------------------------------------------------
    # Recipient lifecycle
    # ------------------------------------------------------------------

    def _require_unfinished(self, recipient_id: str, campaign_id: str) -> ExecutionState:
        state = self.store.require_state(recipient_id, campaign_id)
        if state.is_finished:
            raise StateError(
                f"Recipient {recipient_id} has already left campaign {campaign_id}",
                recipient_id=recipient_id,
                campaign_id=campaign_id,
                status=state.status.value,
            )
        return state

    def stop(
        self,
        recipient_id: str,
        campaign_id: str,
        reason: str = "stopped",
        now: datetime | None = None,
    ) -> ExecutionState:
        """Take a recipient out of a campaign for good.

        Raises:
            StateError: If the recipient is not enrolled or already finished
        """
        now = as_utc(now) if now else utcnow()
        state = self._require_unfinished(recipient_id, campaign_id)
        stopped = state.evolve(
            status=RecipientStatus.STOPPED,
            current_step_id=None,
            resume_at=None,
            wait_kind=None,
            paused_at=None,
            status_reason=reason,
            finished_at=now,
        )
        self.store.save_state(stopped)
        logger.info(
            "Stopped %s in campaign %s (%s)",
            recipient_id,
            campaign_id,
            reason,
            extra={"recipient_id": recipient_id, "campaign_id": campaign_id},
        )
        return stopped

    def pause(
        self, recipient_id: str, campaign_id: str, now: datetime | None = None
    ) -> ExecutionState:
        """Hold a recipient at its current step until :meth:`unpause`.

        A paused recipient is never resumed by the scheduler and takes no
        rule actions. Its pending ``resumeAt`` is kept.

        Raises:
            StateError: If the recipient is not enrolled, finished or
                already paused
        """
        now = as_utc(now) if now else utcnow()
        state = self._require_unfinished(recipient_id, campaign_id)
        if state.status == RecipientStatus.PAUSED:
            raise StateError(
                f"Recipient {recipient_id} is already paused in campaign {campaign_id}",
                recipient_id=recipient_id,
                campaign_id=campaign_id,
            )
        paused = state.evolve(status=RecipientStatus.PAUSED, paused_at=now)
        self.store.save_state(paused)
        logger.info(
            "Paused %s in campaign %s",
            recipient_id,
            campaign_id,
            extra={"recipient_id": recipient_id, "campaign_id": campaign_id},
        )
        return paused

    def unpause(self, recipient_id: str, campaign_id: str) -> ExecutionState:
        """Release a paused recipient.

        A recipient paused during a wait goes back to waiting for the same
        ``resumeAt`` (which may already have passed); any other goes back to
        active and moves on at the next :meth:`resume`.

        Raises:
            StateError: If the recipient is not enrolled or not paused
        """
        state = self.store.require_state(recipient_id, campaign_id)
        if state.status != RecipientStatus.PAUSED:
            raise StateError(
                f"Recipient {recipient_id} is not paused in campaign {campaign_id}",
                recipient_id=recipient_id,
                campaign_id=campaign_id,
                status=state.status.value,
            )
        waiting = state.resume_at is not None or state.wait_kind is not None
        released = state.evolve(
            status=RecipientStatus.WAITING if waiting else RecipientStatus.ACTIVE,
            paused_at=None,
        )
        self.store.save_state(released)
        logger.info(
            "Unpaused %s in campaign %s",
            recipient_id,
            campaign_id,
            extra={"recipient_id": recipient_id, "campaign_id": campaign_id},
        )
        return released

    def purge_finished(self, now: datetime | None = None) -> int:
        """Delete states that finished longer ago than the configured retention."""
        now = as_utc(now) if now else utcnow()
        cutoff = now - timedelta(days=self.settings.finished_retention_days)
        return self.store.purge_finished(cutoff)
