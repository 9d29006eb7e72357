"""Dry-run commands: walk a campaign or evaluate rules for a sample recipient.

Nothing is persisted and no side effect is dispatched; the commands only
print what the engine would do.
"""

from __future__ import annotations

import typer
from rich.panel import Panel
from rich.table import Table

from drip_engine.campaigns.runner import RunResult, StepBudget, StepGraphRunner
from drip_engine.errors import DripError, RunawayGraphError
from drip_engine.loader import load_campaign, load_rules
from drip_engine.rules.evaluator import RulePolicy, evaluate_rules
from drip_engine.state import RecipientStatus
from drip_engine.utils.timeutil import utcnow

from ..helpers import console, fail, parse_facts, parse_now, print_json

_STATUS_COLORS = {
    RecipientStatus.ACTIVE: "cyan",
    RecipientStatus.WAITING: "yellow",
    RecipientStatus.PAUSED: "magenta",
    RecipientStatus.STOPPED: "red",
    RecipientStatus.COMPLETED: "green",
}


def simulate(
    file: str = typer.Argument(..., help="Path to campaign JSON/YAML file"),
    fact: list[str] | None = typer.Option(None, "--fact", "-f", help="Facts in key=value format"),
    now: str | None = typer.Option(None, "--now", help="Simulation time (ISO-8601)"),
    max_steps: int = typer.Option(100, "--max-steps", min=1, help="Step budget per run"),
    recipient: str = typer.Option("sample-recipient", "--recipient", "-r", help="Recipient id"),
    follow_waits: int = typer.Option(
        0, "--follow-waits", min=0, help="Skip ahead through up to N waits"
    ),
    json_output: bool = typer.Option(False, "--json", "-j", help="Output as JSON"),
):
    """Run a campaign for a sample recipient without persisting anything."""
    facts = parse_facts(fact)
    start_at = parse_now(now) or utcnow()
    runner = StepGraphRunner(budget=StepBudget(max_steps=max_steps, max_seconds=None))

    try:
        campaign = load_campaign(file)
        state = runner.start(campaign, recipient, start_at)
        runs = [runner.advance(campaign, state, facts, start_at)]
        while runs[-1].state.status == RecipientStatus.WAITING and len(runs) <= follow_waits:
            parked = runs[-1].state
            runs.append(runner.advance(campaign, parked, facts, parked.resume_at or start_at))
    except RunawayGraphError as e:
        if json_output:
            print_json({"ok": False, **e.to_dict(), "state": e.state.to_dict() if e.state else None})
        else:
            console.print(f"[red]Runaway graph:[/red] {e.message}")
        raise typer.Exit(1)
    except DripError as e:
        fail(e, json_output)

    final = runs[-1].state
    effects = [effect for run in runs for effect in run.effects]
    transitions = [t for run in runs for t in run.transitions]

    if json_output:
        print_json(
            {
                "ok": True,
                "state": final.to_dict(),
                "effects": [effect.to_dict() for effect in effects],
                "transitions": [
                    {
                        "stepId": t.step_id,
                        "type": t.step_type,
                        "outcome": t.outcome,
                        "nextStepId": t.next_step_id,
                    }
                    for t in transitions
                ],
            }
        )
        return

    _print_run(campaign.name, runs)


def _print_run(name: str, runs: list[RunResult]) -> None:
    final = runs[-1].state
    color = _STATUS_COLORS[final.status]
    details = [
        f"Recipient: [bold]{final.recipient_id}[/bold]",
        f"Status: [{color}]{final.status.value}[/{color}]",
        f"Current step: [bold]{final.current_step_id or '-'}[/bold]",
    ]
    if final.status_reason:
        details.append(f"Reason: {final.status_reason}")
    if final.resume_at:
        details.append(f"Resumes at: {final.resume_at.isoformat()}")
    if final.tags:
        details.append(f"Tags: {', '.join(sorted(final.tags))}")
    console.print(Panel("\n".join(details), title=f"Simulation: {name}", border_style="blue"))

    steps = Table(title="Steps")
    steps.add_column("#", justify="right", style="dim")
    steps.add_column("Step", style="cyan")
    steps.add_column("Type")
    steps.add_column("Outcome")
    steps.add_column("Next")
    index = 0
    for run in runs:
        for t in run.transitions:
            index += 1
            steps.add_row(str(index), t.step_id, t.step_type, t.outcome, t.next_step_id or "")
    console.print(steps)

    effects = [effect for run in runs for effect in run.effects]
    if effects:
        table = Table(title="Side effects")
        table.add_column("Kind", style="magenta")
        table.add_column("Action")
        table.add_column("Payload")
        for effect in effects:
            table.add_row(effect.kind.value, effect.action_id, str(effect.payload))
        console.print(table)


def rules(
    file: str = typer.Argument(..., help="Path to rules JSON/YAML file"),
    fact: list[str] | None = typer.Option(None, "--fact", "-f", help="Facts in key=value format"),
    now: str | None = typer.Option(None, "--now", help="Evaluation time (ISO-8601)"),
    policy: RulePolicy = typer.Option(RulePolicy.ALL, "--policy", "-p", help="Multi-rule policy"),
    json_output: bool = typer.Option(False, "--json", "-j", help="Output as JSON"),
):
    """Evaluate branching rules against a fact snapshot."""
    facts = parse_facts(fact)
    at = parse_now(now) or utcnow()

    try:
        loaded = load_rules(file)
        results = evaluate_rules(loaded, facts, at, policy)
    except DripError as e:
        fail(e, json_output)

    if json_output:
        print_json(
            {
                "ok": True,
                "policy": policy.value,
                "results": [
                    {
                        "ruleId": r.rule_id,
                        "matched": r.matched,
                        "conditions": r.condition_results,
                        "actions": [a.model_dump(by_alias=True, mode="json") for a in r.actions],
                    }
                    for r in results
                ],
            }
        )
        return

    names = {rule.id: rule for rule in loaded}
    table = Table(title=f"Rule evaluation ({policy.value})")
    table.add_column("Priority", justify="right", style="dim")
    table.add_column("Rule", style="cyan")
    table.add_column("Matched")
    table.add_column("Actions")
    for r in results:
        rule = names[r.rule_id]
        matched = "[green]yes[/green]" if r.matched else "[red]no[/red]"
        actions = ", ".join(a.type for a in r.actions) or "-"
        table.add_row(str(rule.priority), rule.name, matched, actions)
    console.print(table)

    skipped = len(loaded) - len(results)
    if skipped:
        console.print(f"[dim]{skipped} rule(s) not evaluated (inactive or after first match)[/dim]")
