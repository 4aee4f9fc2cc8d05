# Copyright (c) Syntropy Systems
"""polish status command."""
from __future__ import annotations

import typer
from rich.console import Console
from rich.table import Table

from polish.cli.render import format_score, format_time_ago, status_markup
from polish.config import get_db_path, get_hook_state_path, load_config, require_polish_dir
from polish.db import get_connection, get_latest_events, get_sessions
from polish.errors import ConfigError
from polish.models import SessionRecord
from polish.state import load_state

console = Console()


def status() -> None:
    """Show active sessions and the stop-hook state.

    Lists pending and running sessions with their latest event, followed by
    the most recently finished session.
    """
    try:
        polish_dir = require_polish_dir()
    except RuntimeError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from e

    conn = get_connection(get_db_path(polish_dir))
    try:
        records = [SessionRecord.model_validate(s) for s in get_sessions(conn, limit=100)]
        active = [r for r in records if r.is_active]
        finished = [r for r in records if not r.is_active]
        latest = {r.id: get_latest_events(conn, r.id, limit=1) for r in active}
    finally:
        conn.close()

    if active:
        table = Table(show_header=True, header_style="bold", title="Active sessions")
        table.add_column("ID", style="dim")
        table.add_column("Status")
        table.add_column("Started")
        table.add_column("Last event")

        for record in active:
            events = latest.get(record.id) or []
            last = f"{events[-1]['type']} ({format_time_ago(events[-1]['timestamp'])})" if events else "-"
            table.add_row(
                record.id,
                status_markup(record.status),
                format_time_ago(record.started_at),
                last,
            )
        console.print(table)
    else:
        console.print("[dim]No active sessions[/dim]")

    if finished:
        last_done = finished[0]
        console.print()
        console.print(
            f"[bold]Last session[/bold] {last_done.id} {status_markup(last_done.status)} "
            f"{format_score(last_done.initial_score)} -> {format_score(last_done.final_score)} "
            f"[dim]({last_done.stopped_reason or '-'}, {format_time_ago(last_done.finished_at)})[/dim]"
        )

    hook_state_path = get_hook_state_path(polish_dir)
    if hook_state_path.exists():
        state = load_state(hook_state_path)
        try:
            max_stalled = load_config(polish_dir).max_stalled
        except ConfigError:
            max_stalled = None
        stalled = f"{state.stalled_count}/{max_stalled}" if max_stalled else str(state.stalled_count)
        console.print()
        console.print("[bold]Stop hook[/bold]")
        console.print(f"  [dim]iteration:[/dim] {state.iteration}")
        console.print(f"  [dim]best score:[/dim] {format_score(state.best_score)}")
        console.print(f"  [dim]stalled:[/dim] {stalled}")
        console.print(f"  [dim]updated:[/dim] {format_time_ago(state.last_updated)}")
