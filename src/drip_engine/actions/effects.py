"""Side-effect descriptors.

The executor never performs I/O. Each I/O-bearing outcome of an action is
described by a SideEffect and handed to the caller, which dispatches it to
the mail sender, webhook client or contact store exactly once.
"""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import Field

from drip_engine.schema import DefinitionModel


class EffectKind(str, Enum):
    """Kinds of side effect a caller may need to dispatch."""

    SEND_EMAIL = "send_email"
    WEBHOOK = "webhook"
    TAG_MUTATION = "tag_mutation"
    FIELD_MUTATION = "field_mutation"
    MOVE_TO_SEQUENCE = "move_to_sequence"


class SideEffect(DefinitionModel):
    """A single I/O request produced by an action."""

    kind: EffectKind
    payload: dict[str, Any] = Field(default_factory=dict)
    action_id: str = Field(alias="actionId")
    recipient_id: str = Field(alias="recipientId")
    campaign_id: str = Field(alias="campaignId")
