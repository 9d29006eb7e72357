"""Validate command: check a campaign or rule file for structural issues."""

from __future__ import annotations

from collections import Counter

import typer
from rich.panel import Panel
from rich.table import Table

from drip_engine.campaigns.graph import StepGraph
from drip_engine.campaigns.models import Campaign
from drip_engine.errors import ValidationError
from drip_engine.loader import load_definition
from drip_engine.rules.models import Rule

from ..helpers import console, print_json


def _campaign_issues(campaign: Campaign) -> list[dict]:
    issues: list[dict] = []
    graph = StepGraph(campaign)

    if not campaign.steps:
        issues.append({"severity": "warning", "message": "Campaign has no steps"})

    for cycle in graph.detect_cycles():
        issues.append(
            {
                "severity": "warning",
                "message": f"Cycle (bounded by the step budget): {' -> '.join(cycle)}",
                "id": cycle[0],
            }
        )

    for step_id in graph.unreachable_steps():
        issues.append(
            {
                "severity": "warning",
                "message": f"Step '{step_id}' is unreachable from the start step",
                "id": step_id,
            }
        )

    if campaign.settings.start_trigger == "date" and campaign.settings.start_date is None:
        issues.append(
            {"severity": "error", "message": "startTrigger 'date' requires a startDate"}
        )
    return issues


def _rule_issues(rules: list[Rule]) -> list[dict]:
    issues: list[dict] = []
    counts = Counter(rule.id for rule in rules)
    for rule_id, count in counts.items():
        if count > 1:
            issues.append(
                {"severity": "error", "message": f"Duplicate rule id ({count}x)", "id": rule_id}
            )

    for rule in rules:
        if not rule.conditions and rule.is_active:
            issues.append(
                {"severity": "warning", "message": "Rule has no conditions and always matches", "id": rule.id}
            )
        if not rule.true_actions and not rule.false_actions:
            issues.append({"severity": "warning", "message": "Rule has no actions", "id": rule.id})
    return issues


def validate(
    file: str = typer.Argument(..., help="Path to campaign or rules JSON/YAML file"),
    json_output: bool = typer.Option(False, "--json", "-j", help="Output as JSON"),
):
    """Validate a campaign or rule file."""
    try:
        definition = load_definition(file)
    except ValidationError as e:
        if json_output:
            print_json({"valid": False, "issues": [{"severity": "error", **e.to_dict()}]})
        else:
            console.print(f"[red]Invalid definition:[/red] {e.message}")
        raise typer.Exit(1)

    if isinstance(definition, Campaign):
        kind = "campaign"
        issues = _campaign_issues(definition)
        summary = f"Campaign: [bold]{definition.name}[/bold]\nSteps: [bold]{len(definition.steps)}[/bold]"
        counts = {"step_count": len(definition.steps)}
    else:
        kind = "rules"
        issues = _rule_issues(definition)
        active = sum(1 for r in definition if r.is_active)
        summary = f"Rules: [bold]{len(definition)}[/bold]  |  Active: [bold]{active}[/bold]"
        counts = {"rule_count": len(definition), "active_count": active}

    has_errors = any(i["severity"] == "error" for i in issues)

    if json_output:
        print_json({"valid": not has_errors, "kind": kind, "issues": issues, **counts})
        if has_errors:
            raise typer.Exit(1)
        return

    if not issues:
        console.print(Panel(summary, title=f"[green]{kind.title()} valid[/green]", border_style="green"))
        return

    console.print(
        Panel(
            f"{summary}\nIssues: [bold]{len(issues)}[/bold]",
            title="[red]Validation Failed[/red]" if has_errors else "[yellow]Validation Results[/yellow]",
            border_style="red" if has_errors else "yellow",
        )
    )

    table = Table(title="Issues")
    table.add_column("Severity")
    table.add_column("Message")
    table.add_column("Id", style="dim")
    for issue in issues:
        sev = issue["severity"]
        color = "red" if sev == "error" else "yellow"
        table.add_row(f"[{color}]{sev}[/{color}]", issue["message"], issue.get("id", ""))
    console.print(table)

    if has_errors:
        raise typer.Exit(1)
