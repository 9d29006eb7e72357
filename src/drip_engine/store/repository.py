"""Database-backed store for rules, campaigns and execution state.

Definitions and states are stored as JSON documents using their wire
(camelCase) form, with a few columns pulled out for ordering and the
scheduler's due-state query.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from datetime import datetime
from typing import Any

from drip_engine.campaigns.models import Campaign, parse_campaign
from drip_engine.errors import DefinitionNotFoundError, StateError
from drip_engine.rules.models import Rule, parse_rule
from drip_engine.schema import DefinitionModel
from drip_engine.campaigns.guards import UNSUBSCRIBED
from drip_engine.state import FINISHED_STATUSES, CampaignStats, ExecutionState, RecipientStatus
from drip_engine.utils.timeutil import as_utc, utcnow

from .backends import DatabaseBackend, create_backend

logger = logging.getLogger(__name__)


def _ts(value: datetime | None) -> str | None:
    """Fixed-width UTC timestamp so text comparison orders correctly."""
    if value is None:
        return None
    return as_utc(value).strftime("%Y-%m-%dT%H:%M:%S.%f+00:00")


def _dump(model: DefinitionModel) -> str:
    return json.dumps(model.model_dump(by_alias=True, mode="json"), sort_keys=True)


class CampaignStore:
    """Persistence for rule and campaign definitions and recipient state.

    Supports SQLite and PostgreSQL through :mod:`drip_engine.store.backends`.
    """

    SCHEMA = """
        CREATE TABLE IF NOT EXISTS rules (
            id TEXT PRIMARY KEY,
            name TEXT NOT NULL,
            priority INTEGER NOT NULL DEFAULT 0,
            is_active INTEGER NOT NULL DEFAULT 1,
            document TEXT NOT NULL,
            updated_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS campaigns (
            id TEXT PRIMARY KEY,
            name TEXT NOT NULL,
            status TEXT NOT NULL,
            document TEXT NOT NULL,
            updated_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS execution_states (
            recipient_id TEXT NOT NULL,
            campaign_id TEXT NOT NULL,
            status TEXT NOT NULL,
            current_step_id TEXT,
            resume_at TEXT,
            status_reason TEXT,
            emails_sent INTEGER NOT NULL DEFAULT 0,
            finished_at TEXT,
            document TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            PRIMARY KEY (recipient_id, campaign_id)
        );

        CREATE INDEX IF NOT EXISTS idx_rules_priority
        ON rules(priority, id);

        CREATE INDEX IF NOT EXISTS idx_states_due
        ON execution_states(status, resume_at);

        CREATE INDEX IF NOT EXISTS idx_states_campaign
        ON execution_states(campaign_id, status);

        CREATE INDEX IF NOT EXISTS idx_states_finished
        ON execution_states(status, finished_at);
    """

    def __init__(
        self,
        database_url: str | None = None,
        *,
        backend: DatabaseBackend | None = None,
    ):
        """Initialize the store.

        Args:
            database_url: Database URL (if no backend provided)
            backend: Database backend to use (keyword-only, overrides database_url)
        """
        self.backend = backend or create_backend(database_url)
        self._init_db()

    def _init_db(self):
        """Initialize database schema."""
        self.backend.executescript(self.SCHEMA)

    def close(self) -> None:
        self.backend.close()

    # ------------------------------------------------------------------
    # Rules
    # ------------------------------------------------------------------

    def save_rule(self, rule: Rule | Mapping[str, Any]) -> Rule:
        """Insert or replace a rule definition.

        Raises:
            ValidationError: If a raw mapping is not a valid rule
        """
        rule = parse_rule(rule)
        with self.backend.transaction():
            self.backend.execute(
                """
                INSERT INTO rules (id, name, priority, is_active, document, updated_at)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT (id) DO UPDATE SET
                    name = excluded.name,
                    priority = excluded.priority,
                    is_active = excluded.is_active,
                    document = excluded.document,
                    updated_at = excluded.updated_at
                """,
                (
                    rule.id,
                    rule.name,
                    rule.priority,
                    1 if rule.is_active else 0,
                    _dump(rule),
                    _ts(utcnow()),
                ),
            )
        logger.debug("Saved rule %s", rule.id, extra={"rule_id": rule.id})
        return rule

    def get_rule(self, rule_id: str) -> Rule:
        """Get a rule by ID.

        Raises:
            DefinitionNotFoundError: If no such rule is stored
        """
        row = self.backend.fetchone("SELECT document FROM rules WHERE id = ?", (rule_id,))
        if row is None:
            raise DefinitionNotFoundError(
                f"Rule not found: {rule_id}", kind="rule", definition_id=rule_id
            )
        return parse_rule(json.loads(row["document"]))

    def list_rules(self, active_only: bool = False) -> list[Rule]:
        """Rules in evaluation order (priority, then id)."""
        query = "SELECT document FROM rules"
        if active_only:
            query += " WHERE is_active = 1"
        query += " ORDER BY priority, id"
        return [parse_rule(json.loads(row["document"])) for row in self.backend.fetchall(query)]

    def delete_rule(self, rule_id: str) -> bool:
        """Delete a rule. Returns True if it existed."""
        with self.backend.transaction():
            cursor = self.backend.execute("DELETE FROM rules WHERE id = ?", (rule_id,))
        return cursor.rowcount > 0

    # ------------------------------------------------------------------
    # Campaigns
    # ------------------------------------------------------------------

    def save_campaign(self, campaign: Campaign | Mapping[str, Any]) -> Campaign:
        """Insert or replace a campaign definition.

        Raises:
            ValidationError: If a raw mapping is not a valid campaign
        """
        campaign = parse_campaign(campaign)
        with self.backend.transaction():
            self.backend.execute(
                """
                INSERT INTO campaigns (id, name, status, document, updated_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT (id) DO UPDATE SET
                    name = excluded.name,
                    status = excluded.status,
                    document = excluded.document,
                    updated_at = excluded.updated_at
                """,
                (campaign.id, campaign.name, campaign.status, _dump(campaign), _ts(utcnow())),
            )
        logger.debug("Saved campaign %s", campaign.id, extra={"campaign_id": campaign.id})
        return campaign

    def get_campaign(self, campaign_id: str) -> Campaign:
        """Get a campaign by ID.

        Raises:
            DefinitionNotFoundError: If no such campaign is stored
        """
        row = self.backend.fetchone(
            "SELECT document FROM campaigns WHERE id = ?", (campaign_id,)
        )
        if row is None:
            raise DefinitionNotFoundError(
                f"Campaign not found: {campaign_id}", kind="campaign", definition_id=campaign_id
            )
        return parse_campaign(json.loads(row["document"]))

    def list_campaigns(self, status: str | None = None) -> list[Campaign]:
        """Campaigns ordered by name, optionally filtered by status."""
        if status:
            rows = self.backend.fetchall(
                "SELECT document FROM campaigns WHERE status = ? ORDER BY name, id", (status,)
            )
        else:
            rows = self.backend.fetchall("SELECT document FROM campaigns ORDER BY name, id")
        return [parse_campaign(json.loads(row["document"])) for row in rows]

    def delete_campaign(self, campaign_id: str) -> bool:
        """Delete a campaign and every recipient state in it.

        Returns:
            True if the campaign existed
        """
        with self.backend.transaction():
            self.backend.execute(
                "DELETE FROM execution_states WHERE campaign_id = ?", (campaign_id,)
            )
            cursor = self.backend.execute("DELETE FROM campaigns WHERE id = ?", (campaign_id,))
        return cursor.rowcount > 0

    # ------------------------------------------------------------------
    # Execution state
    # ------------------------------------------------------------------

    def save_state(self, state: ExecutionState) -> None:
        """Insert or replace the state of one (recipient, campaign) pair.

        A finished state without ``finishedAt`` is filed under its last
        action, its enrolment time, or failing both the time it is saved.
        """
        finished_at = None
        if state.is_finished:
            finished_at = (
                state.finished_at or state.last_action_at or state.entered_at or utcnow()
            )
        with self.backend.transaction():
            self.backend.execute(
                """
                INSERT INTO execution_states
                    (recipient_id, campaign_id, status, current_step_id, resume_at,
                     status_reason, emails_sent, finished_at, document, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT (recipient_id, campaign_id) DO UPDATE SET
                    status = excluded.status,
                    current_step_id = excluded.current_step_id,
                    resume_at = excluded.resume_at,
                    status_reason = excluded.status_reason,
                    emails_sent = excluded.emails_sent,
                    finished_at = excluded.finished_at,
                    document = excluded.document,
                    updated_at = excluded.updated_at
                """,
                (
                    state.recipient_id,
                    state.campaign_id,
                    state.status.value,
                    state.current_step_id,
                    _ts(state.resume_at),
                    state.status_reason,
                    state.emails_sent,
                    _ts(finished_at),
                    _dump(state),
                    _ts(utcnow()),
                ),
            )

    def load_state(self, recipient_id: str, campaign_id: str) -> ExecutionState | None:
        """State of a recipient in a campaign, or None if never enrolled."""
        row = self.backend.fetchone(
            "SELECT document FROM execution_states WHERE recipient_id = ? AND campaign_id = ?",
            (recipient_id, campaign_id),
        )
        if row is None:
            return None
        return self._state_from_row(row)

    def require_state(self, recipient_id: str, campaign_id: str) -> ExecutionState:
        """Like :meth:`load_state` but raises StateError when missing."""
        state = self.load_state(recipient_id, campaign_id)
        if state is None:
            raise StateError(
                f"Recipient {recipient_id} is not enrolled in campaign {campaign_id}",
                recipient_id=recipient_id,
                campaign_id=campaign_id,
            )
        return state

    def list_states(
        self, campaign_id: str, status: RecipientStatus | str | None = None
    ) -> list[ExecutionState]:
        """States of every recipient in a campaign."""
        query = "SELECT document FROM execution_states WHERE campaign_id = ?"
        params: tuple = (campaign_id,)
        if status is not None:
            query += " AND status = ?"
            params += (RecipientStatus(status).value,)
        query += " ORDER BY recipient_id"
        return [self._state_from_row(row) for row in self.backend.fetchall(query, params)]

    def due_states(self, now: datetime | None = None, limit: int | None = None) -> list[ExecutionState]:
        """Waiting states whose ``resumeAt`` has passed, oldest first."""
        query = """
            SELECT document FROM execution_states
            WHERE status = ? AND (resume_at IS NULL OR resume_at <= ?)
            ORDER BY resume_at, recipient_id, campaign_id
        """
        params: tuple = (RecipientStatus.WAITING.value, _ts(now or utcnow()))
        if limit is not None:
            query += " LIMIT ?"
            params += (limit,)
        return [self._state_from_row(row) for row in self.backend.fetchall(query, params)]

    def campaign_stats(self, campaign_id: str) -> CampaignStats:
        """Recipient counts by status, emails sent and unsubscribes for a campaign."""
        rows = self.backend.fetchall(
            """
            SELECT status,
                   COUNT(*) AS recipients,
                   COALESCE(SUM(emails_sent), 0) AS emails_sent,
                   SUM(CASE WHEN status_reason = ? THEN 1 ELSE 0 END) AS unsubscribes
            FROM execution_states
            WHERE campaign_id = ?
            GROUP BY status
            """,
            (UNSUBSCRIBED, campaign_id),
        )
        by_status = {row["status"]: int(row["recipients"]) for row in rows}
        return CampaignStats(
            campaign_id=campaign_id,
            total_recipients=sum(by_status.values()),
            by_status=by_status,
            emails_sent=sum(int(row["emails_sent"]) for row in rows),
            unsubscribes=sum(int(row["unsubscribes"] or 0) for row in rows),
        )

    def purge_finished(self, before: datetime) -> int:
        """Delete stopped and completed states that finished before ``before``.

        The cutoff is compared with each state's own ``finishedAt``, so a
        simulated clock purges the same rows as a real one.

        Returns:
            Number of states deleted
        """
        statuses = sorted(s.value for s in FINISHED_STATUSES)
        with self.backend.transaction():
            cursor = self.backend.execute(
                "DELETE FROM execution_states WHERE status IN (?, ?) AND finished_at < ?",
                (*statuses, _ts(before)),
            )
        deleted = cursor.rowcount
        if deleted:
            logger.info("Purged %d finished execution states", deleted)
        return deleted

    @staticmethod
    def _state_from_row(row: dict) -> ExecutionState:
        return ExecutionState.model_validate(json.loads(row["document"]))
