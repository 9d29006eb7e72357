"""Tests for rule evaluation, multi-rule policy and rule statistics."""

import pytest

from drip_engine.errors import ValidationError
from drip_engine.rules.evaluator import (
    RulePolicy,
    evaluate_rule,
    evaluate_rules,
    order_rules,
    record_outcome,
)
from drip_engine.rules.models import Rule, parse_rule

ENGAGEMENT_RULE = {
    "id": "engagement",
    "name": "Opened?",
    "conditions": [
        {"type": "engagement", "field": "email_opened", "operator": "equals", "value": True}
    ],
    "conditionLogic": "AND",
    "trueActions": [{"type": "add_tag", "data": {"tagName": "engaged"}}],
    "falseActions": [{"type": "add_tag", "data": {"tagName": "cold"}}],
}


def _two_condition_rule(logic):
    return parse_rule(
        {
            "id": f"rule-{logic}",
            "conditions": [
                {"id": "a", "field": "a", "operator": "equals", "value": True},
                {"id": "b", "field": "b", "operator": "equals", "value": True},
            ],
            "conditionLogic": logic,
            "trueActions": [{"type": "add_tag", "data": {"tagName": "yes"}}],
            "falseActions": [{"type": "add_tag", "data": {"tagName": "no"}}],
        }
    )


def _tag_rule(rule_id, priority, field, tag, active=True):
    return parse_rule(
        {
            "id": rule_id,
            "priority": priority,
            "isActive": active,
            "conditions": [{"field": field, "operator": "exists"}],
            "trueActions": [{"type": "add_tag", "data": {"tagName": tag}}],
        }
    )


class TestEvaluateRule:
    """Tests for evaluate_rule."""

    def test_engaged_scenario(self, now):
        """An opened email selects the true path unchanged."""
        rule = parse_rule(ENGAGEMENT_RULE)
        result = evaluate_rule(rule, {"email_opened": True}, now)
        assert result.matched is True
        assert result.actions == rule.true_actions
        assert result.actions[0].data.tag_name == "engaged"

    def test_cold_scenario(self, now):
        """Without the fact the false path is selected."""
        rule = parse_rule(ENGAGEMENT_RULE)
        result = evaluate_rule(rule, {}, now)
        assert result.matched is False
        assert result.actions == rule.false_actions
        assert result.actions[0].data.tag_name == "cold"

    def test_raw_mapping_accepted(self, now):
        result = evaluate_rule(ENGAGEMENT_RULE, {"email_opened": "true"}, now)
        assert result.matched is True

    def test_vacuous_truth(self, now):
        """A rule with no conditions always matches."""
        rule = Rule(id="always", true_actions=({"type": "stop_sequence"},))
        for facts in ({}, {"anything": 1}, {"email_opened": False}):
            assert evaluate_rule(rule, facts, now).matched is True

    @pytest.mark.parametrize(
        "a,b,expected_and,expected_or",
        [
            (True, True, True, True),
            (True, False, False, True),
            (False, True, False, True),
            (False, False, False, False),
        ],
    )
    def test_and_or_truth_table(self, a, b, expected_and, expected_or, now):
        """AND needs both conditions, OR needs at least one."""
        facts = {"a": a, "b": b}
        assert evaluate_rule(_two_condition_rule("AND"), facts, now).matched is expected_and
        assert evaluate_rule(_two_condition_rule("OR"), facts, now).matched is expected_or

    def test_condition_results_reported(self, now):
        result = evaluate_rule(_two_condition_rule("OR"), {"a": True, "b": False}, now)
        assert result.condition_results == {"a": True, "b": False}

    def test_lowercase_logic_accepted(self, now):
        rule = _two_condition_rule("or")
        assert rule.condition_logic == "OR"

    def test_inactive_rule_skipped(self, now):
        rule = parse_rule({**ENGAGEMENT_RULE, "isActive": False})
        result = evaluate_rule(rule, {"email_opened": True}, now)
        assert result.skipped is True
        assert result.matched is False
        assert result.actions == ()

    def test_invalid_action_in_rule(self):
        """A rule whose action lacks a required field fails at construction."""
        bad = {**ENGAGEMENT_RULE, "trueActions": [{"type": "send_email", "data": {}}]}
        with pytest.raises(ValidationError) as exc:
            parse_rule(bad)
        assert exc.value.field == "templateId"

    def test_unknown_action_type(self):
        bad = {**ENGAGEMENT_RULE, "trueActions": [{"type": "teleport"}]}
        with pytest.raises(ValidationError) as exc:
            parse_rule(bad)
        assert exc.value.field == "type"


class TestEvaluateRules:
    """Tests for multi-rule evaluation under an explicit policy."""

    def _rules(self):
        return [
            _tag_rule("late", 5, "x", "late"),
            _tag_rule("early", 1, "x", "early"),
            _tag_rule("off", 0, "x", "off", active=False),
            _tag_rule("middle", 3, "missing", "middle"),
        ]

    def test_order_by_priority(self):
        assert [r.id for r in order_rules(self._rules())] == ["early", "middle", "late"]

    def test_all_policy(self, now):
        results = evaluate_rules(self._rules(), {"x": 1}, now, RulePolicy.ALL)
        assert [(r.rule_id, r.matched) for r in results] == [
            ("early", True),
            ("middle", False),
            ("late", True),
        ]

    def test_first_match_policy(self, now):
        results = evaluate_rules(self._rules(), {"x": 1}, now, "first_match")
        assert [r.rule_id for r in results] == ["early"]

    def test_first_match_without_match(self, now):
        results = evaluate_rules(self._rules(), {}, now, RulePolicy.FIRST_MATCH)
        assert [r.rule_id for r in results] == ["early", "middle", "late"]
        assert not any(r.matched for r in results)


class TestRecordOutcome:
    """Tests for rule statistics."""

    def test_counts_paths(self, now):
        rule = parse_rule(ENGAGEMENT_RULE)
        rule = record_outcome(rule, evaluate_rule(rule, {"email_opened": True}, now), now)
        rule = record_outcome(rule, evaluate_rule(rule, {}, now), now)
        assert rule.stats.triggered == 2
        assert rule.stats.true_path == 1
        assert rule.stats.false_path == 1
        assert rule.stats.last_triggered == now

    def test_skipped_not_counted(self, now):
        rule = parse_rule({**ENGAGEMENT_RULE, "isActive": False})
        updated = record_outcome(rule, evaluate_rule(rule, {}, now), now)
        assert updated.stats.triggered == 0

    def test_original_unchanged(self, now):
        rule = parse_rule(ENGAGEMENT_RULE)
        record_outcome(rule, evaluate_rule(rule, {}, now), now)
        assert rule.stats.triggered == 0
