"""Drip Engine Error Hierarchy.

Structured exception types for the campaign automation engine.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from drip_engine.actions.effects import SideEffect
    from drip_engine.state import ExecutionState


class DripError(Exception):
    """Base error for all drip engine exceptions."""

    code = "DRIP_ERROR"

    def __init__(self, message: str, details: dict = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict:
        return {
            "error": self.code,
            "message": self.message,
            "details": self.details,
        }


class ValidationError(DripError):
    """A condition, action, rule or campaign definition is malformed."""

    code = "VALIDATION"

    def __init__(self, message: str, field: str = None, details: dict = None):
        merged = {"field": field}
        if details:
            merged.update(details)
        super().__init__(message, merged)
        self.field = field


class RunawayGraphError(DripError):
    """Step budget exhausted while walking a campaign graph.

    The attached state is the last one handed to the checkpoint callback,
    so callers can persist it and retry with a larger budget.
    """

    code = "RUNAWAY_GRAPH"

    def __init__(
        self,
        message: str,
        step_id: str = None,
        steps_taken: int = 0,
        state: ExecutionState | None = None,
        effects: list[SideEffect] | None = None,
    ):
        super().__init__(message, {"step_id": step_id, "steps_taken": steps_taken})
        self.step_id = step_id
        self.steps_taken = steps_taken
        self.state = state
        self.effects = list(effects or [])


class DefinitionNotFoundError(DripError):
    """Rule or campaign definition not found in the store."""

    code = "NOT_FOUND"

    def __init__(self, message: str, kind: str = None, definition_id: str = None):
        super().__init__(message, {"kind": kind, "id": definition_id})
        self.kind = kind
        self.definition_id = definition_id


class StateError(DripError):
    """Execution state cannot be used for the requested operation."""

    code = "STATE_ERROR"

    def __init__(self, message: str, **details: Any):
        super().__init__(message, details)
