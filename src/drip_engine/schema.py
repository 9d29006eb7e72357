"""Base model shared by every definition and state record."""

from __future__ import annotations

import uuid
from typing import Any

from pydantic import BaseModel, ConfigDict


def new_id(prefix: str) -> str:
    """Generate an identifier like ``rule_3f2a9c1b7d4e``."""
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


class DefinitionModel(BaseModel):
    """Immutable record with camelCase wire aliases.

    Python code uses snake_case attributes; JSON records (UI payloads and the
    store) use the camelCase aliases. Both spellings are accepted on input.
    """

    model_config = ConfigDict(
        frozen=True,
        populate_by_name=True,
        extra="ignore",
    )

    def to_dict(self) -> dict[str, Any]:
        """Serialise to a JSON-compatible dict using wire aliases."""
        return self.model_dump(by_alias=True, mode="json")
