"""Tests for the store-backed automation service."""

from datetime import UTC, datetime, timedelta

import pytest

from drip_engine.actions.effects import EffectKind
from drip_engine.campaigns.runner import StepBudget
from drip_engine.errors import DefinitionNotFoundError, RunawayGraphError, StateError
from drip_engine.rules.evaluator import RulePolicy
from drip_engine.service import AutomationService
from drip_engine.state import ExecutionState, RecipientStatus, WaitKind

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _onboarding(status="active", **settings):
    data = {
        "id": "c1",
        "name": "Onboarding",
        "status": status,
        "steps": [
            {
                "id": "welcome",
                "type": "email",
                "data": {"templateId": "welcome"},
                "connections": {"next": "pause"},
            },
            {
                "id": "pause",
                "type": "wait",
                "data": {"waitDuration": 1, "waitUnit": "days"},
                "connections": {"next": "tips"},
            },
            {"id": "tips", "type": "email", "data": {"templateId": "tips"}},
        ],
    }
    if settings:
        data["settings"] = settings
    return data


def _engagement_rule(rule_id="engaged", priority=0, actions=None):
    return {
        "id": rule_id,
        "priority": priority,
        "conditions": [{"field": "email_opened", "operator": "equals", "value": True}],
        "trueActions": actions or [{"type": "add_tag", "data": {"tagName": "engaged"}}],
        "falseActions": [{"type": "add_tag", "data": {"tagName": "cold"}}],
    }


@pytest.fixture
def service(store, settings):
    return AutomationService(store=store, settings=settings)


# ---------------------------------------------------------------------------
# Enrolment and resumption
# ---------------------------------------------------------------------------


class TestEnroll:
    """Tests for AutomationService.enroll."""

    def test_enroll_runs_until_wait(self, service, store, now):
        store.save_campaign(_onboarding())
        result = service.enroll("c1", "r1", now=now)

        assert result.state.status == RecipientStatus.WAITING
        assert result.state.current_step_id == "pause"
        assert [e.payload["templateId"] for e in result.effects] == ["welcome"]
        assert store.load_state("r1", "c1") == result.state

    def test_draft_campaign_rejected(self, service, store, now):
        store.save_campaign(_onboarding(status="draft"))
        with pytest.raises(StateError):
            service.enroll("c1", "r1", now=now)
        assert store.load_state("r1", "c1") is None

    def test_unknown_campaign(self, service, now):
        with pytest.raises(DefinitionNotFoundError):
            service.enroll("missing", "r1", now=now)

    def test_double_enroll_rejected(self, service, store, now):
        store.save_campaign(_onboarding())
        service.enroll("c1", "r1", now=now)
        with pytest.raises(StateError):
            service.enroll("c1", "r1", now=now)

    def test_reenroll_after_finish(self, service, store, now):
        store.save_campaign(_onboarding())
        service.enroll("c1", "r1", facts={"unsubscribed": True}, now=now)
        assert store.require_state("r1", "c1").status == RecipientStatus.STOPPED

        result = service.enroll("c1", "r1", now=now)
        assert result.state.status == RecipientStatus.WAITING

    def test_initial_tags(self, service, store, now):
        store.save_campaign(_onboarding())
        result = service.enroll("c1", "r1", now=now, tags=["lead"])
        assert result.state.tags == frozenset({"lead"})

    def test_runaway_keeps_checkpoint(self, store, settings, now):
        """A budget overrun leaves the last completed step saved."""
        loop = {
            "id": "loop",
            "name": "Loop",
            "status": "active",
            "steps": [
                {
                    "id": "A",
                    "type": "action",
                    "data": {"action": {"type": "add_tag", "value": "x"}},
                    "connections": {"next": "A"},
                }
            ],
        }
        store.save_campaign(loop)
        service = AutomationService(
            store=store, settings=settings.model_copy(update={"max_steps_per_run": 5})
        )
        assert service.budget == StepBudget(max_steps=5, max_seconds=settings.max_seconds_per_run)

        with pytest.raises(RunawayGraphError):
            service.enroll("loop", "r1", now=now)
        saved = store.require_state("r1", "loop")
        assert saved.current_step_id == "A"
        assert saved.tags == frozenset({"x"})


class TestResume:
    """Tests for resume and resume_due."""

    def test_resume_after_wait(self, service, store, now):
        store.save_campaign(_onboarding())
        service.enroll("c1", "r1", now=now)

        result = service.resume("r1", "c1", now=now + timedelta(days=1))
        assert result.state.status == RecipientStatus.COMPLETED
        assert [e.payload["templateId"] for e in result.effects] == ["tips"]
        assert store.require_state("r1", "c1").status == RecipientStatus.COMPLETED

    def test_resume_not_enrolled(self, service, store, now):
        store.save_campaign(_onboarding())
        with pytest.raises(StateError):
            service.resume("r1", "c1", now=now)

    def test_paused_campaign_leaves_state(self, service, store, now):
        store.save_campaign(_onboarding())
        parked = service.enroll("c1", "r1", now=now).state
        store.save_campaign(_onboarding(status="paused"))

        result = service.resume("r1", "c1", now=now + timedelta(days=2))
        assert result.state == parked
        assert result.effects == ()

    def test_resume_due(self, service, store, now):
        store.save_campaign(_onboarding())
        for rid in ("r1", "r2"):
            service.enroll("c1", rid, now=now)
        service.enroll("c1", "late", now=now + timedelta(hours=6))

        seen = []

        def facts_for(state):
            seen.append(state.recipient_id)
            return {}

        report = service.resume_due(now=now + timedelta(days=1), facts_for=facts_for)
        assert sorted(seen) == ["r1", "r2"]
        assert len(report.results) == 2
        assert report.failures == {}
        assert [e.kind for e in report.effects] == [EffectKind.SEND_EMAIL, EffectKind.SEND_EMAIL]
        assert store.require_state("late", "c1").status == RecipientStatus.WAITING

    def test_resume_due_reports_failures(self, service, store, now):
        store.save_campaign(_onboarding())
        service.enroll("c1", "r1", now=now)
        # Drop the definition but keep the recipient state
        with store.backend.transaction():
            store.backend.execute("DELETE FROM campaigns WHERE id = ?", ("c1",))

        report = service.resume_due(now=now + timedelta(days=1))
        assert report.results == []
        assert isinstance(report.failures[("r1", "c1")], DefinitionNotFoundError)


class TestDeliveryFloor:
    """Engine settings tighten campaign delivery settings."""

    def test_stricter_cap_wins(self, store, settings, now):
        store.save_campaign(_onboarding(maxEmailsPerDay=50))
        service = AutomationService(
            store=store, settings=settings.model_copy(update={"max_emails_per_day": 2})
        )
        assert service._campaign("c1").settings.max_emails_per_day == 2

    def test_campaign_cap_kept_when_stricter(self, service, store):
        store.save_campaign(_onboarding(maxEmailsPerDay=1))
        assert service._campaign("c1").settings.max_emails_per_day == 1

    def test_unsubscribes_cannot_be_disabled(self, service, store, now):
        store.save_campaign(_onboarding(respectUnsubscribes=False))
        result = service.enroll("c1", "r1", facts={"unsubscribed": True}, now=now)
        assert result.state.status == RecipientStatus.STOPPED
        assert result.effects == ()


# ---------------------------------------------------------------------------
# Rules
# ---------------------------------------------------------------------------


class TestApplyRules:
    """Tests for AutomationService.apply_rules."""

    def test_actions_saved_to_state(self, service, store, now):
        store.save_campaign(_onboarding())
        store.save_rule(_engagement_rule())
        service.enroll("c1", "r1", now=now)

        applied = service.apply_rules("r1", "c1", {"email_opened": True}, now)
        assert applied.state.tags == frozenset({"engaged"})
        assert store.require_state("r1", "c1").tags == frozenset({"engaged"})
        assert applied.results[0].matched is True

    def test_stats_saved(self, service, store, now):
        store.save_campaign(_onboarding())
        store.save_rule(_engagement_rule())
        service.enroll("c1", "r1", now=now)

        service.apply_rules("r1", "c1", {"email_opened": True}, now)
        service.apply_rules("r1", "c1", {}, now)
        stats = store.get_rule("engaged").stats
        assert (stats.triggered, stats.true_path, stats.false_path) == (2, 1, 1)
        assert stats.last_triggered == now

    def test_rules_see_state_tags(self, service, store, now):
        store.save_campaign(_onboarding())
        store.save_rule(
            {
                "id": "vip",
                "conditions": [{"field": "tags", "operator": "contains", "value": "vip"}],
                "trueActions": [{"type": "update_field", "data": {"fieldName": "tier", "fieldValue": "gold"}}],
            }
        )
        service.enroll("c1", "r1", now=now, tags=["vip"])
        applied = service.apply_rules("r1", "c1", {}, now)
        assert applied.state.fields == {"tier": "gold"}

    def test_first_match_policy(self, service, store, now):
        store.save_campaign(_onboarding())
        store.save_rule(_engagement_rule("first", priority=1))
        store.save_rule(_engagement_rule("second", priority=2))
        service.enroll("c1", "r1", now=now)

        applied = service.apply_rules("r1", "c1", {"email_opened": True}, now, RulePolicy.FIRST_MATCH)
        assert [r.rule_id for r in applied.results] == ["first"]
        assert store.get_rule("second").stats.triggered == 0

    def test_stop_leaves_remaining(self, service, store, now):
        store.save_campaign(_onboarding())
        store.save_rule(
            _engagement_rule(
                actions=[
                    {"type": "stop_sequence"},
                    {"type": "add_tag", "data": {"tagName": "never"}},
                ]
            )
        )
        service.enroll("c1", "r1", now=now)

        applied = service.apply_rules("r1", "c1", {"email_opened": True}, now)
        assert applied.state.status == RecipientStatus.STOPPED
        assert [a.type for a in applied.remaining] == ["add_tag"]
        assert "never" not in store.require_state("r1", "c1").tags

    def test_finished_recipient_rejected(self, service, store, now):
        store.save_campaign(_onboarding())
        service.enroll("c1", "r1", facts={"unsubscribed": True}, now=now)
        with pytest.raises(StateError):
            service.apply_rules("r1", "c1", {}, now)

    def test_rule_wait_after_wait_step_moves_on(self, service, store, now):
        """A rule wait on a recipient parked by a wait step still resumes past that step."""
        store.save_campaign(_onboarding())
        store.save_rule(
            _engagement_rule(actions=[{"type": "wait", "data": {"duration": 3, "durationUnit": "days"}}])
        )
        service.enroll("c1", "r1", now=now)

        applied = service.apply_rules("r1", "c1", {"email_opened": True}, now)
        assert applied.state.wait_kind == WaitKind.STEP
        assert applied.state.resume_at == now + timedelta(days=3)

        result = service.resume("r1", "c1", now=now + timedelta(days=3))
        assert [t.step_id for t in result.transitions] == ["tips"]

    def test_rule_wait_before_step_reruns_it(self, service, store, now):
        """A rule wait on a recipient whose step has not run yet resumes into that step."""
        store.save_campaign(_onboarding())
        store.save_rule(
            _engagement_rule(actions=[{"type": "wait", "data": {"duration": 1, "durationUnit": "hours"}}])
        )
        store.save_state(ExecutionState(recipient_id="r1", campaign_id="c1", current_step_id="welcome"))

        applied = service.apply_rules("r1", "c1", {"email_opened": True}, now)
        assert applied.state.wait_kind == WaitKind.ACTION

        result = service.resume("r1", "c1", now=now + timedelta(hours=1))
        assert [e.payload["templateId"] for e in result.effects] == ["welcome"]


class TestLifecycle:
    """Tests for stop, pause and unpause of a single recipient."""

    def test_stop(self, service, store, now):
        store.save_campaign(_onboarding())
        service.enroll("c1", "r1", now=now)

        stopped = service.stop("r1", "c1", now=now)
        assert stopped.status == RecipientStatus.STOPPED
        assert stopped.status_reason == "stopped"
        assert stopped.current_step_id is None
        assert stopped.resume_at is None
        assert stopped.finished_at == now
        assert store.require_state("r1", "c1") == stopped
        assert service.resume_due(now + timedelta(days=2)).results == []

    def test_stop_with_reason(self, service, store, now):
        store.save_campaign(_onboarding())
        service.enroll("c1", "r1", now=now)
        assert service.stop("r1", "c1", reason="bounced", now=now).status_reason == "bounced"

    def test_stop_finished_rejected(self, service, store, now):
        store.save_campaign(_onboarding())
        service.enroll("c1", "r1", facts={"unsubscribed": True}, now=now)
        with pytest.raises(StateError):
            service.stop("r1", "c1", now=now)

    def test_stop_not_enrolled(self, service, now):
        with pytest.raises(StateError):
            service.stop("ghost", "c1", now=now)

    def test_pause_holds_past_resume_time(self, service, store, now):
        store.save_campaign(_onboarding())
        service.enroll("c1", "r1", now=now)

        paused = service.pause("r1", "c1", now=now)
        assert paused.status == RecipientStatus.PAUSED
        assert paused.paused_at == now
        assert paused.resume_at == now + timedelta(days=1)

        later = now + timedelta(days=2)
        assert service.resume_due(later).results == []
        assert service.resume("r1", "c1", now=later).state == paused

    def test_unpause_returns_to_waiting(self, service, store, now):
        store.save_campaign(_onboarding())
        service.enroll("c1", "r1", now=now)
        service.pause("r1", "c1", now=now)

        released = service.unpause("r1", "c1")
        assert released.status == RecipientStatus.WAITING
        assert released.paused_at is None
        assert released.wait_kind == WaitKind.STEP

        report = service.resume_due(now + timedelta(days=2))
        assert [e.payload["templateId"] for e in report.effects] == ["tips"]

    def test_unpause_active_recipient(self, service, store, now):
        store.save_campaign(_onboarding())
        store.save_state(ExecutionState(recipient_id="r1", campaign_id="c1", current_step_id="welcome"))
        service.pause("r1", "c1", now=now)

        assert service.unpause("r1", "c1").status == RecipientStatus.ACTIVE
        result = service.resume("r1", "c1", now=now)
        assert result.effects[0].payload["templateId"] == "welcome"

    def test_pause_twice_rejected(self, service, store, now):
        store.save_campaign(_onboarding())
        service.enroll("c1", "r1", now=now)
        service.pause("r1", "c1", now=now)
        with pytest.raises(StateError):
            service.pause("r1", "c1", now=now)

    def test_unpause_when_not_paused_rejected(self, service, store, now):
        store.save_campaign(_onboarding())
        service.enroll("c1", "r1", now=now)
        with pytest.raises(StateError):
            service.unpause("r1", "c1")

    def test_paused_recipient_takes_no_rules(self, service, store, now):
        store.save_campaign(_onboarding())
        store.save_rule(_engagement_rule())
        service.enroll("c1", "r1", now=now)
        service.pause("r1", "c1", now=now)
        with pytest.raises(StateError):
            service.apply_rules("r1", "c1", {"email_opened": True}, now)

    def test_paused_recipient_cannot_reenroll(self, service, store, now):
        store.save_campaign(_onboarding())
        service.enroll("c1", "r1", now=now)
        service.pause("r1", "c1", now=now)
        with pytest.raises(StateError):
            service.enroll("c1", "r1", now=now)

    def test_stop_paused_recipient(self, service, store, now):
        store.save_campaign(_onboarding())
        service.enroll("c1", "r1", now=now)
        service.pause("r1", "c1", now=now)
        stopped = service.stop("r1", "c1", now=now)
        assert stopped.status == RecipientStatus.STOPPED
        assert stopped.paused_at is None


class TestPurge:
    """Tests for retention-based purging."""

    def test_purge_uses_retention(self, service, store, now):
        """Retention counts from when the recipient finished, on the caller's clock."""
        store.save_campaign(_onboarding())
        service.enroll("c1", "done", facts={"unsubscribed": True}, now=now)
        service.enroll("c1", "waiting", now=now)
        retention = timedelta(days=service.settings.finished_retention_days)

        assert service.purge_finished(now=now + retention) == 0
        assert service.purge_finished(now=now + retention + timedelta(seconds=1)) == 1
        assert store.load_state("done", "c1") is None
        assert store.load_state("waiting", "c1") is not None

    def test_stopped_recipient_purged_from_stop_time(self, service, store, now):
        store.save_campaign(_onboarding())
        service.enroll("c1", "r1", now=now)
        stop_time = now + timedelta(days=5)
        service.stop("r1", "c1", now=stop_time)
        retention = timedelta(days=service.settings.finished_retention_days)

        assert service.purge_finished(now=now + retention + timedelta(days=1)) == 0
        assert service.purge_finished(now=stop_time + retention + timedelta(seconds=1)) == 1


def test_throttle_floor_applies_at_send(store, settings):
    """With the engine cap at 1 the second email waits for the next UTC day."""
    campaign = _onboarding()
    campaign["steps"][0]["connections"] = {"next": "tips"}
    campaign["steps"] = [campaign["steps"][0], campaign["steps"][2]]
    store.save_campaign(campaign)
    service = AutomationService(
        store=store, settings=settings.model_copy(update={"max_emails_per_day": 1})
    )

    start = datetime(2024, 1, 1, 22, 0, tzinfo=UTC)
    result = service.enroll("c1", "r1", now=start)
    assert result.state.status == RecipientStatus.WAITING
    assert result.state.resume_at == datetime(2024, 1, 2, tzinfo=UTC)
