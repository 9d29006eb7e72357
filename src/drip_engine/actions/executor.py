"""Action executor.

Applies one action to a recipient's execution state and describes any I/O
it implies as SideEffect records. The executor performs no I/O, never
blocks, and never retries: each descriptor is produced exactly once per
execution and dispatching it is the caller's job.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from drip_engine.errors import ValidationError
from drip_engine.state import ExecutionState, RecipientStatus, WaitKind
from drip_engine.utils.timeutil import as_utc, duration_delta, utcnow

from .effects import EffectKind, SideEffect
from .models import (
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

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ActionOutcome:
    """New state plus the side effects produced by one action."""

    state: ExecutionState
    effects: tuple[SideEffect, ...] = ()


@dataclass(frozen=True)
class ActionPlanResult:
    """Outcome of running a list of actions in order.

    ``remaining`` holds the actions that were not run because an earlier
    action parked or finished the recipient (a wait, stop or transfer).
    """

    state: ExecutionState
    effects: tuple[SideEffect, ...] = ()
    executed: tuple[Action, ...] = ()
    remaining: tuple[Action, ...] = ()


ActionHandler = Callable[[Any, ExecutionState, datetime], ActionOutcome]


class ActionExecutor:
    """Interprets actions against execution state."""

    def __init__(self) -> None:
        self._handlers: dict[str, ActionHandler] = {
            "send_email": self._send_email,
            "wait": self._wait,
            "add_tag": self._add_tag,
            "remove_tag": self._remove_tag,
            "update_field": self._update_field,
            "webhook": self._webhook,
            "stop_sequence": self._stop_sequence,
            "move_to_sequence": self._move_to_sequence,
        }

    def execute(
        self,
        action: Action | Mapping[str, Any],
        state: ExecutionState,
        now: datetime | None = None,
    ) -> ActionOutcome:
        """Execute one action.

        Validation happens before any state change, so an invalid action
        leaves the caller's state exactly as it was.

        Args:
            action: Action model or raw mapping
            state: Current execution state
            now: Execution time (defaults to UTC now)

        Returns:
            ActionOutcome with the new state and zero or one side effect

        Raises:
            ValidationError: If the action is malformed
        """
        action = parse_action(action)
        now = as_utc(now) if now else utcnow()
        handler = self._handlers[action.type]
        outcome = handler(action, state, now)
        logger.debug(
            "Executed %s for %s",
            action.type,
            state.recipient_id,
            extra={
                "action_type": action.type,
                "recipient_id": state.recipient_id,
                "campaign_id": state.campaign_id,
            },
        )
        return outcome

    def execute_all(
        self,
        actions: Iterable[Action | Mapping[str, Any]],
        state: ExecutionState,
        now: datetime | None = None,
    ) -> ActionPlanResult:
        """Execute actions in order until a wait parks or an action finishes the recipient.

        Every action is validated up front so a bad action late in the list
        does not leave the earlier ones half-applied.
        """
        parsed = [parse_action(a) for a in actions]
        now = as_utc(now) if now else utcnow()
        effects: list[SideEffect] = []
        executed: list[Action] = []

        for index, action in enumerate(parsed):
            outcome = self.execute(action, state, now)
            state = outcome.state
            effects.extend(outcome.effects)
            executed.append(action)
            if state.is_finished or action.type == "wait":
                return ActionPlanResult(
                    state=state,
                    effects=tuple(effects),
                    executed=tuple(executed),
                    remaining=tuple(parsed[index + 1 :]),
                )

        return ActionPlanResult(state=state, effects=tuple(effects), executed=tuple(executed))

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    @staticmethod
    def _effect(
        kind: EffectKind, action: Action, state: ExecutionState, payload: dict
    ) -> SideEffect:
        return SideEffect(
            kind=kind,
            payload=payload,
            action_id=action.id,
            recipient_id=state.recipient_id,
            campaign_id=state.campaign_id,
        )

    def _send_email(
        self, action: SendEmailAction, state: ExecutionState, now: datetime
    ) -> ActionOutcome:
        today = now.date()
        payload: dict[str, Any] = {
            "templateId": action.data.template_id,
            "recipientId": state.recipient_id,
            "campaignId": state.campaign_id,
        }
        if action.data.subject is not None:
            payload["subject"] = action.data.subject
        if action.data.message is not None:
            payload["message"] = action.data.message

        new_state = state.evolve(
            last_action_at=now,
            emails_sent=state.emails_sent + 1,
            send_day=today,
            sends_today=state.sends_on(today) + 1,
        )
        return ActionOutcome(
            new_state, (self._effect(EffectKind.SEND_EMAIL, action, state, payload),)
        )

    def _wait(self, action: WaitAction, state: ExecutionState, now: datetime) -> ActionOutcome:
        try:
            resume_at = now + duration_delta(action.data.duration, action.data.duration_unit)
        except OverflowError:
            raise ValidationError(
                f"wait of {action.data.duration} {action.data.duration_unit} from {now.isoformat()} "
                "is out of range",
                field="duration",
            ) from None
        new_state = state.evolve(
            status=RecipientStatus.WAITING,
            resume_at=resume_at,
            wait_kind=WaitKind.ACTION,
            status_reason=None,
        )
        return ActionOutcome(new_state)

    def _add_tag(self, action: AddTagAction, state: ExecutionState, now: datetime) -> ActionOutcome:
        tag = action.data.tag_name
        if tag in state.tags:
            return ActionOutcome(state)
        new_state = state.evolve(tags=state.tags | {tag}, last_action_at=now)
        payload = {"operation": "add", "tagName": tag}
        return ActionOutcome(
            new_state, (self._effect(EffectKind.TAG_MUTATION, action, state, payload),)
        )

    def _remove_tag(
        self, action: RemoveTagAction, state: ExecutionState, now: datetime
    ) -> ActionOutcome:
        tag = action.data.tag_name
        if tag not in state.tags:
            return ActionOutcome(state)
        new_state = state.evolve(tags=state.tags - {tag}, last_action_at=now)
        payload = {"operation": "remove", "tagName": tag}
        return ActionOutcome(
            new_state, (self._effect(EffectKind.TAG_MUTATION, action, state, payload),)
        )

    def _update_field(
        self, action: UpdateFieldAction, state: ExecutionState, now: datetime
    ) -> ActionOutcome:
        fields = dict(state.fields)
        fields[action.data.field_name] = action.data.field_value
        new_state = state.evolve(fields=fields, last_action_at=now)
        payload = {"fieldName": action.data.field_name, "fieldValue": action.data.field_value}
        return ActionOutcome(
            new_state, (self._effect(EffectKind.FIELD_MUTATION, action, state, payload),)
        )

    def _webhook(self, action: WebhookAction, state: ExecutionState, now: datetime) -> ActionOutcome:
        payload = {
            "url": action.data.webhook_url,
            "payload": {
                **action.data.payload,
                "recipientId": state.recipient_id,
                "campaignId": state.campaign_id,
                "actionId": action.id,
            },
        }
        new_state = state.evolve(last_action_at=now)
        return ActionOutcome(
            new_state, (self._effect(EffectKind.WEBHOOK, action, state, payload),)
        )

    def _stop_sequence(
        self, action: StopSequenceAction, state: ExecutionState, now: datetime
    ) -> ActionOutcome:
        new_state = state.evolve(
            status=RecipientStatus.STOPPED,
            current_step_id=None,
            resume_at=None,
            wait_kind=None,
            status_reason="stop_sequence",
            last_action_at=now,
            finished_at=now,
        )
        return ActionOutcome(new_state)

    def _move_to_sequence(
        self, action: MoveToSequenceAction, state: ExecutionState, now: datetime
    ) -> ActionOutcome:
        target = action.data.sequence_id
        new_state = state.evolve(
            status=RecipientStatus.COMPLETED,
            current_step_id=None,
            resume_at=None,
            wait_kind=None,
            status_reason=f"moved_to:{target}",
            last_action_at=now,
            finished_at=now,
        )
        payload = {"targetCampaignId": target, "recipientId": state.recipient_id}
        return ActionOutcome(
            new_state, (self._effect(EffectKind.MOVE_TO_SEQUENCE, action, state, payload),)
        )
