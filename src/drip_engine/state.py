"""Per-recipient execution state.

One ExecutionState exists per (recipient, campaign) pair. The engine never
mutates a state in place: every action returns a new copy, so a failed
action leaves the caller's state untouched.

The engine assumes it is never invoked concurrently for the same
``(recipient_id, campaign_id)`` pair; callers serialise access with a lock
or a partitioned queue.
"""

from __future__ import annotations

from datetime import date, datetime
from enum import Enum
from typing import Any

from pydantic import Field, field_serializer

from drip_engine.schema import DefinitionModel
from drip_engine.utils.timeutil import as_utc


class RecipientStatus(str, Enum):
    """Lifecycle status of a recipient within a campaign.

    ``paused`` holds a recipient where it is until it is unpaused; its
    ``resumeAt`` and wait kind are kept for that moment.
    """

    ACTIVE = "active"
    WAITING = "waiting"
    PAUSED = "paused"
    STOPPED = "stopped"
    COMPLETED = "completed"


class WaitKind(str, Enum):
    """Why a waiting state is parked.

    ``step`` is set by the runner after it executed a wait (or wait action)
    step and resumes along that step's ``next`` edge. ``action`` comes from a
    wait action run outside a campaign walk, such as a rule, and re-runs the
    current step on resume, as does ``throttle`` once the send cap resets.
    """

    STEP = "step"
    ACTION = "action"
    THROTTLE = "throttle"


FINISHED_STATUSES = frozenset({RecipientStatus.STOPPED, RecipientStatus.COMPLETED})


class ExecutionState(DefinitionModel):
    """Position, tags, fields and wait status of one recipient in one campaign."""

    recipient_id: str = Field(alias="recipientId", min_length=1)
    campaign_id: str = Field(alias="campaignId", min_length=1)
    current_step_id: str | None = Field(None, alias="currentStepId")
    tags: frozenset[str] = frozenset()
    fields: dict[str, Any] = Field(default_factory=dict)
    resume_at: datetime | None = Field(None, alias="resumeAt")
    status: RecipientStatus = RecipientStatus.ACTIVE
    status_reason: str | None = Field(None, alias="statusReason")
    wait_kind: WaitKind | None = Field(None, alias="waitKind")
    entered_at: datetime | None = Field(None, alias="enteredAt")
    last_action_at: datetime | None = Field(None, alias="lastActionAt")
    paused_at: datetime | None = Field(None, alias="pausedAt")
    finished_at: datetime | None = Field(None, alias="finishedAt")
    emails_sent: int = Field(0, alias="emailsSent", ge=0)
    send_day: date | None = Field(None, alias="sendDay")
    sends_today: int = Field(0, alias="sendsToday", ge=0)

    @field_serializer("tags")
    def _serialize_tags(self, tags: frozenset[str]) -> list[str]:
        return sorted(tags)

    @property
    def key(self) -> tuple[str, str]:
        return (self.recipient_id, self.campaign_id)

    @property
    def is_finished(self) -> bool:
        return self.status in FINISHED_STATUSES

    def is_due(self, now: datetime) -> bool:
        """True when a waiting state may be resumed at ``now``."""
        if self.status != RecipientStatus.WAITING:
            return False
        if self.resume_at is None:
            return True
        return as_utc(now) >= as_utc(self.resume_at)

    def sends_on(self, day: date) -> int:
        """Emails already sent on ``day`` (UTC)."""
        return self.sends_today if self.send_day == day else 0

    def evolve(self, **changes: Any) -> ExecutionState:
        """Return a copy with ``changes`` applied (snake_case names)."""
        return self.model_copy(update=changes)


class CampaignStats(DefinitionModel):
    """Recipient totals for one campaign, aggregated from its states."""

    campaign_id: str = Field(alias="campaignId")
    total_recipients: int = Field(0, alias="totalRecipients")
    by_status: dict[str, int] = Field(default_factory=dict, alias="byStatus")
    emails_sent: int = Field(0, alias="emailsSent")
    unsubscribes: int = 0
