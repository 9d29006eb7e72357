"""Load campaign and rule definitions from YAML or JSON files."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Literal

import yaml

from drip_engine.campaigns.models import Campaign, parse_campaign
from drip_engine.errors import ValidationError
from drip_engine.rules.models import Rule, parse_rules

logger = logging.getLogger(__name__)

DefinitionKind = Literal["campaign", "rules"]

_YAML_SUFFIXES = (".yaml", ".yml")


def read_document(path: str | Path) -> Any:
    """Parse a YAML or JSON file.

    The format follows the file suffix; anything that is not ``.json`` is
    read as YAML.

    Raises:
        ValidationError: If the file is missing, unreadable or malformed
    """
    path = Path(path)
    try:
        content = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ValidationError(f"Cannot read {path}: {e}", details={"path": str(path)}) from e

    try:
        if path.suffix.lower() == ".json":
            return json.loads(content)
        return yaml.safe_load(content)
    except (json.JSONDecodeError, yaml.YAMLError) as e:
        fmt = "JSON" if path.suffix.lower() == ".json" else "YAML"
        raise ValidationError(
            f"Invalid {fmt} in {path}: {e}", details={"path": str(path)}
        ) from e


def detect_kind(data: Any) -> DefinitionKind:
    """Guess whether a parsed document holds a campaign or rules.

    Campaigns carry ``steps``; a list, a ``rules`` key or a single mapping
    with ``conditions`` is treated as rules.

    Raises:
        ValidationError: If the document looks like neither
    """
    if isinstance(data, list):
        return "rules"
    if isinstance(data, dict):
        if "steps" in data:
            return "campaign"
        if "rules" in data or "conditions" in data or "trueActions" in data:
            return "rules"
    raise ValidationError("Document is neither a campaign nor a rule list")


def _rules_payload(data: Any) -> list:
    if isinstance(data, dict) and "rules" in data:
        data = data["rules"]
    elif isinstance(data, dict):
        data = [data]
    if not isinstance(data, list):
        raise ValidationError("Rules file must contain a list of rules", field="rules")
    return data


def load_campaign(path: str | Path) -> Campaign:
    """Load and validate a campaign definition.

    Raises:
        ValidationError: If the file cannot be read or the campaign is invalid
    """
    data = read_document(path)
    if not isinstance(data, dict):
        raise ValidationError(
            f"Campaign file must contain a mapping: {path}", details={"path": str(path)}
        )
    campaign = parse_campaign(data)
    logger.debug("Loaded campaign %s from %s", campaign.id, path)
    return campaign


def load_rules(path: str | Path) -> list[Rule]:
    """Load and validate a list of rules.

    Accepts a top-level list, a mapping with a ``rules`` key, or a single
    rule mapping.

    Raises:
        ValidationError: If the file cannot be read or a rule is invalid
    """
    rules = parse_rules(_rules_payload(read_document(path)))
    logger.debug("Loaded %d rule(s) from %s", len(rules), path)
    return rules


def load_definition(path: str | Path) -> Campaign | list[Rule]:
    """Load a file holding either a campaign or rules."""
    data = read_document(path)
    if detect_kind(data) == "campaign":
        return parse_campaign(data)
    return parse_rules(_rules_payload(data))
