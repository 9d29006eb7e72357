"""Pre-send guards applied by the runner before an email step sends."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from drip_engine.rules.conditions import evaluate_condition
from drip_engine.rules.models import Condition
from drip_engine.state import ExecutionState
from drip_engine.utils.timeutil import next_utc_midnight

from .models import CampaignSettings

logger = logging.getLogger(__name__)

UNSUBSCRIBED = "unsubscribed"
DAILY_CAP = "daily_cap"

_UNSUBSCRIBED_CHECK = Condition(
    id="guard_unsubscribed",
    type="engagement",
    field="unsubscribed",
    operator="equals",
    value=True,
)


@dataclass(frozen=True)
class SendVerdict:
    """Guard decision for one pending send.

    A denied verdict with ``resume_at`` means retry later; without it the
    recipient must leave the campaign.
    """

    allow: bool
    reason: str | None = None
    resume_at: datetime | None = None

    @property
    def is_final(self) -> bool:
        return not self.allow and self.resume_at is None


ALLOW = SendVerdict(allow=True)


def pre_send_decision(
    settings: CampaignSettings,
    state: ExecutionState,
    facts: Mapping[str, Any],
    now: datetime,
) -> SendVerdict:
    """Decide whether an email may be sent to the recipient at ``now``.

    Args:
        settings: Campaign delivery settings
        state: Recipient's execution state
        facts: Recipient fact snapshot
        now: Send time (UTC)

    Returns:
        SendVerdict; denied verdicts carry the reason code
    """
    if settings.respect_unsubscribes and evaluate_condition(_UNSUBSCRIBED_CHECK, facts, now):
        logger.info(
            "Recipient %s is unsubscribed",
            state.recipient_id,
            extra={"recipient_id": state.recipient_id, "campaign_id": state.campaign_id},
        )
        return SendVerdict(allow=False, reason=UNSUBSCRIBED)

    cap = settings.max_emails_per_day
    if cap is not None and state.sends_on(now.date()) >= cap:
        resume_at = next_utc_midnight(now)
        logger.info(
            "Daily send cap %d reached for %s, deferring to %s",
            cap,
            state.recipient_id,
            resume_at.isoformat(),
            extra={"recipient_id": state.recipient_id, "campaign_id": state.campaign_id},
        )
        return SendVerdict(allow=False, reason=DAILY_CAP, resume_at=resume_at)

    return ALLOW
