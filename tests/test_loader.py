"""Tests for loading definitions from YAML and JSON files."""

import json

import pytest

from drip_engine.campaigns.models import Campaign
from drip_engine.errors import ValidationError
from drip_engine.loader import detect_kind, load_campaign, load_definition, load_rules

CAMPAIGN_YAML = """
id: onboarding
name: Onboarding
status: active
steps:
  - id: welcome
    type: email
    data:
      templateId: welcome
    connections:
      next: pause
  - id: pause
    type: wait
    data:
      waitDuration: 2
      waitUnit: days
"""

RULE = {
    "id": "engaged",
    "conditions": [{"field": "email_opened", "operator": "equals", "value": True}],
    "trueActions": [{"type": "add_tag", "data": {"tagName": "engaged"}}],
}


class TestLoadCampaign:
    """Tests for load_campaign."""

    def test_yaml(self, tmp_path):
        path = tmp_path / "campaign.yaml"
        path.write_text(CAMPAIGN_YAML)
        campaign = load_campaign(path)
        assert campaign.id == "onboarding"
        assert [s.id for s in campaign.steps] == ["welcome", "pause"]

    def test_json(self, tmp_path):
        path = tmp_path / "campaign.json"
        path.write_text(json.dumps({"id": "c1", "name": "C", "steps": []}))
        assert load_campaign(path).id == "c1"

    def test_missing_file(self, tmp_path):
        with pytest.raises(ValidationError, match="Cannot read"):
            load_campaign(tmp_path / "nope.yaml")

    def test_bad_yaml(self, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("steps: [unclosed\n")
        with pytest.raises(ValidationError, match="Invalid YAML"):
            load_campaign(path)

    def test_bad_json(self, tmp_path):
        path = tmp_path / "bad.json"
        path.write_text("{not json")
        with pytest.raises(ValidationError, match="Invalid JSON"):
            load_campaign(path)

    def test_not_a_mapping(self, tmp_path):
        path = tmp_path / "list.yaml"
        path.write_text("- a\n- b\n")
        with pytest.raises(ValidationError, match="mapping"):
            load_campaign(path)


class TestLoadRules:
    """Tests for load_rules."""

    @pytest.mark.parametrize(
        "payload",
        [[RULE], {"rules": [RULE]}, RULE],
        ids=["list", "rules-key", "single"],
    )
    def test_accepted_shapes(self, tmp_path, payload):
        path = tmp_path / "rules.json"
        path.write_text(json.dumps(payload))
        rules = load_rules(path)
        assert [r.id for r in rules] == ["engaged"]

    def test_invalid_rule_names_field(self, tmp_path):
        path = tmp_path / "rules.json"
        bad = {**RULE, "trueActions": [{"type": "send_email", "data": {}}]}
        path.write_text(json.dumps([bad]))
        with pytest.raises(ValidationError) as exc:
            load_rules(path)
        assert exc.value.field == "templateId"

    def test_rules_must_be_list(self, tmp_path):
        path = tmp_path / "rules.yaml"
        path.write_text("rules: nope\n")
        with pytest.raises(ValidationError):
            load_rules(path)


class TestDetectKind:
    """Tests for detect_kind and load_definition."""

    def test_detect(self):
        assert detect_kind({"steps": []}) == "campaign"
        assert detect_kind([]) == "rules"
        assert detect_kind({"conditions": []}) == "rules"

    def test_unknown_document(self):
        with pytest.raises(ValidationError):
            detect_kind({"hello": "world"})

    def test_load_definition(self, tmp_path):
        campaign_path = tmp_path / "c.yaml"
        campaign_path.write_text(CAMPAIGN_YAML)
        rules_path = tmp_path / "r.json"
        rules_path.write_text(json.dumps([RULE]))

        assert isinstance(load_definition(campaign_path), Campaign)
        assert load_definition(rules_path)[0].id == "engaged"
