# Copyright (c) Syntropy Systems
"""polish score command."""
from __future__ import annotations

import typer
from rich.console import Console

from polish.cli.render import build_score_table
from polish.config import get_project_root, load_config, require_polish_dir, validate_config
from polish.errors import PolishError
from polish.metrics import MetricScorer, ShellMetricRunner

console = Console()


def score(
    as_json: bool = typer.Option(
        False,
        "--json",
        help="Print the score as JSON",
    ),
) -> None:
    """Score the project in place.

    Runs every configured metric in the project directory and prints the
    per-metric breakdown. Nothing is committed.
    """
    try:
        polish_dir = require_polish_dir()
        config = load_config(polish_dir)
        validate_config(config)
    except (PolishError, RuntimeError) as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from e

    scorer = MetricScorer(
        ShellMetricRunner(
            timeout=config.metric_timeout,
            grace_period=config.kill_grace_period,
        )
    )
    project = get_project_root(polish_dir)

    if as_json:
        result = scorer.score(config.metrics, project)
        typer.echo(result.model_dump_json(indent=2))
        return

    with console.status("Scoring..."):
        result = scorer.score(config.metrics, project)

    console.print(build_score_table(result, title=f"Score for {project.name}"))
    for metric in result.metrics:
        if metric.error:
            console.print(f"[red]{metric.name}:[/red] {metric.error}")

    if result.score >= config.target:
        console.print(f"[green]Target {config.target:g} reached[/green]")
    else:
        console.print(f"[dim]{config.target - result.score:.1f} points below target {config.target:g}[/dim]")
