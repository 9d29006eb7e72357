"""Drip CLI - Main entry point."""

from __future__ import annotations

from typing import Annotated

import typer

from drip_engine import __version__
from drip_engine.config import configure_logging, get_settings

from .helpers import console

app = typer.Typer(
    name="drip",
    help="Validate and dry-run drip campaigns and branching rules.",
    add_completion=False,
    no_args_is_help=True,
    rich_markup_mode="rich",
)


def version_callback(value: bool) -> None:
    """Show version and exit."""
    if value:
        console.print(f"[bold cyan]drip[/bold cyan] version {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Annotated[
        bool,
        typer.Option(
            "--version",
            "-V",
            callback=version_callback,
            is_eager=True,
            help="Show version and exit.",
        ),
    ] = False,
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Log engine activity to stdout."),
    ] = False,
):
    """Drip - campaign automation engine.

    [bold]Quick Start:[/bold]

        drip validate FILE          Check a campaign or rule file
        drip simulate FILE          Walk a campaign for a sample recipient
        drip rules FILE --fact k=v  Evaluate rules against facts
    """
    if verbose:
        settings = get_settings()
        configure_logging("DEBUG", settings.log_format, settings.sanitize_logs)


# =============================================================================
# Register commands
# =============================================================================

from .commands.simulate import rules, simulate  # noqa: E402
from .commands.validate import validate  # noqa: E402

app.command("validate")(validate)
app.command("simulate")(simulate)
app.command("rules")(rules)


if __name__ == "__main__":
    app()
