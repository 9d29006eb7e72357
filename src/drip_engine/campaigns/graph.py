"""Adjacency view over a campaign's step graph."""

from __future__ import annotations

import logging
from collections import defaultdict

from drip_engine.errors import StateError

from .models import Campaign, CampaignStep, EdgeKind

logger = logging.getLogger(__name__)


class StepGraph:
    """Step id -> step and step id -> {edge kind: target} lookups.

    Built once per campaign definition and walked iteratively by the runner.
    Cycles are allowed; :meth:`detect_cycles` only reports them.
    """

    def __init__(self, campaign: Campaign):
        """Initialize the step graph.

        Args:
            campaign: Validated campaign definition
        """
        self.campaign = campaign
        self._build_adjacency()

    def _build_adjacency(self) -> None:
        self._steps: dict[str, CampaignStep] = {}
        self._edges: dict[str, dict[str, str]] = {}
        self._incoming: dict[str, list[str]] = defaultdict(list)

        for step in self.campaign.steps:
            self._steps[step.id] = step
            self._edges[step.id] = step.connections.targets()
            for target in self._edges[step.id].values():
                self._incoming[target].append(step.id)

    def __len__(self) -> int:
        return len(self._steps)

    def __contains__(self, step_id: object) -> bool:
        return step_id in self._steps

    def step(self, step_id: str) -> CampaignStep:
        """Get a step by ID.

        Raises:
            StateError: If the step is not part of the campaign
        """
        try:
            return self._steps[step_id]
        except KeyError:
            raise StateError(
                f"Step {step_id} is not part of campaign {self.campaign.id}",
                step_id=step_id,
                campaign_id=self.campaign.id,
            ) from None

    def target(self, step_id: str, kind: EdgeKind) -> str | None:
        """Target of the ``kind`` edge leaving ``step_id``, if any."""
        return self._edges.get(step_id, {}).get(kind)

    def start_step_id(self) -> str | None:
        """Entry point of the campaign.

        The explicit ``start_step_id`` wins; otherwise the first step with no
        incoming edge, falling back to the first step when every step has one.
        """
        if self.campaign.start_step_id:
            return self.campaign.start_step_id
        for step in self.campaign.steps:
            if not self._incoming.get(step.id):
                return step.id
        if self.campaign.steps:
            return self.campaign.steps[0].id
        return None

    def reachable_from(self, step_id: str) -> set[str]:
        """All step ids reachable from ``step_id`` (inclusive)."""
        visited: set[str] = set()
        to_visit = [step_id]
        while to_visit:
            current = to_visit.pop()
            if current in visited or current not in self._steps:
                continue
            visited.add(current)
            to_visit.extend(self._edges[current].values())
        return visited

    def unreachable_steps(self) -> list[str]:
        """Steps that can never be entered from the start step."""
        start = self.start_step_id()
        if start is None:
            return []
        reachable = self.reachable_from(start)
        return [s.id for s in self.campaign.steps if s.id not in reachable]

    def detect_cycles(self) -> list[list[str]]:
        """Detect cycles in the graph.

        Returns:
            List of cycles, where each cycle is a list of step IDs
        """
        cycles = []
        visited: set[str] = set()
        rec_stack: set[str] = set()

        for root in self._steps:
            if root in visited:
                continue
            # Iterative DFS: (step id, iterator over its targets)
            path: list[str] = [root]
            visited.add(root)
            rec_stack.add(root)
            stack = [(root, iter(self._edges[root].values()))]
            while stack:
                node, targets = stack[-1]
                nxt = next(targets, None)
                if nxt is None:
                    stack.pop()
                    path.pop()
                    rec_stack.discard(node)
                    continue
                if nxt not in visited:
                    visited.add(nxt)
                    rec_stack.add(nxt)
                    path.append(nxt)
                    stack.append((nxt, iter(self._edges[nxt].values())))
                elif nxt in rec_stack:
                    cycle_start = path.index(nxt)
                    cycles.append(path[cycle_start:] + [nxt])

        if cycles:
            logger.debug("Campaign %s has %d cycle(s)", self.campaign.id, len(cycles))
        return cycles
