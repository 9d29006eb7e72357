"""Shared helpers for CLI modules: console, file loading, fact parsing."""

from __future__ import annotations

import json
from datetime import datetime
from typing import Any

import typer
import yaml
from rich.console import Console

from drip_engine.errors import DripError
from drip_engine.utils.timeutil import coerce_timestamp

console = Console()


def print_json(data: Any) -> None:
    """Write JSON to stdout without Rich markup processing."""
    print(json.dumps(data, indent=2, default=str))


def fail(error: DripError, json_output: bool) -> None:
    """Report an engine error and exit with status 1."""
    if json_output:
        print_json({"ok": False, **error.to_dict()})
    else:
        console.print(f"[red]{error.code}:[/red] {error.message}")
    raise typer.Exit(1)


def parse_facts(pairs: list[str] | None) -> dict[str, Any]:
    """Parse ``key=value`` options into a fact snapshot.

    Values are read as YAML scalars, so ``true``, ``3`` and ``[a, b]`` become
    a bool, an int and a list.
    """
    facts: dict[str, Any] = {}
    for pair in pairs or []:
        key, sep, raw = pair.partition("=")
        if not sep or not key.strip():
            console.print(f"[red]Invalid fact format: {pair}[/red]")
            console.print("Use: --fact key=value")
            raise typer.Exit(1)
        try:
            value = yaml.safe_load(raw) if raw.strip() else ""
        except yaml.YAMLError:
            value = raw
        facts[key.strip()] = value
    return facts


def parse_now(value: str | None) -> datetime | None:
    """Parse the ``--now`` option (ISO-8601, ``Z`` allowed)."""
    if value is None:
        return None
    parsed = coerce_timestamp(value)
    if parsed is None:
        console.print(f"[red]Invalid timestamp:[/red] {value}")
        raise typer.Exit(1)
    return parsed
