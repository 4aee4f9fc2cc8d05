# Copyright (c) Syntropy Systems
"""polish sessions and show commands."""
from __future__ import annotations

from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from polish.cli.render import format_duration, format_score, format_time_ago, status_markup
from polish.config import get_db_path, require_polish_dir
from polish.db import get_connection, get_events, get_session, get_sessions
from polish.models import SessionRecord

console = Console()


def sessions(
    status: Optional[str] = typer.Option(
        None,
        "--status", "-s",
        help="Filter by status (pending, running, completed, failed, aborted)",
    ),
    last: int = typer.Option(
        20,
        "--last", "-n",
        help="Number of sessions to show",
    ),
) -> None:
    """List polish sessions, newest first."""
    try:
        polish_dir = require_polish_dir()
    except RuntimeError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from e

    conn = get_connection(get_db_path(polish_dir))
    try:
        rows = get_sessions(conn, status=status, limit=last)
    finally:
        conn.close()

    if not rows:
        console.print("[dim]No sessions found[/dim]")
        return

    table = Table(show_header=True, header_style="bold")
    table.add_column("ID", style="dim")
    table.add_column("Status")
    table.add_column("Score")
    table.add_column("Commits", justify="right")
    table.add_column("Iterations", justify="right")
    table.add_column("Reason")
    table.add_column("Duration")
    table.add_column("Created")

    for row in rows:
        record = SessionRecord.model_validate(row)
        table.add_row(
            record.id,
            status_markup(record.status),
            f"{format_score(record.initial_score)} -> {format_score(record.final_score)}",
            str(record.commits),
            str(record.iterations),
            record.stopped_reason or "-",
            format_duration(record.duration_seconds),
            format_time_ago(record.created_at),
        )

    console.print(table)


def show(
    session_id: str = typer.Argument(
        ...,
        help="Session ID (or unique prefix) to show",
    ),
) -> None:
    """Show details of a session.

    Displays the outcome, the score trajectory and every accepted commit.
    """
    try:
        polish_dir = require_polish_dir()
    except RuntimeError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from e

    conn = get_connection(get_db_path(polish_dir))
    try:
        row = get_session(conn, session_id)
        if row is None:
            console.print(f"[red]Error:[/red] Session {session_id} not found")
            raise typer.Exit(1)
        events = get_events(conn, row["id"])
    finally:
        conn.close()

    record = SessionRecord.model_validate(row)
    console.print(f"\n[bold]Session {record.id}[/bold]")
    console.print(f"  [dim]status:[/dim] {status_markup(record.status)}")
    if record.mission:
        console.print(f"  [dim]mission:[/dim] {record.mission}")
    console.print(f"  [dim]project:[/dim] {record.project_path}")
    if record.branch_name:
        console.print(f"  [dim]branch:[/dim] {record.branch_name}")
    console.print(f"  [dim]score:[/dim] {format_score(record.initial_score)} -> {format_score(record.final_score)}")
    console.print(f"  [dim]iterations:[/dim] {record.iterations}")
    if record.stopped_reason:
        console.print(f"  [dim]stopped:[/dim] {record.stopped_reason}")
    if record.error_message:
        console.print(f"  [dim]error:[/dim] [red]{record.error_message}[/red]")

    console.print()
    console.print(f"  [dim]created:[/dim] {format_time_ago(record.created_at)}")
    if record.started_at:
        console.print(f"  [dim]started:[/dim] {format_time_ago(record.started_at)}")
    if record.finished_at:
        console.print(f"  [dim]finished:[/dim] {format_time_ago(record.finished_at)}")
        console.print(f"  [dim]duration:[/dim] {format_duration(record.duration_seconds)}")

    results = [e for e in events if e["type"] == "result"]
    if results:
        scores = results[-1]["data"].get("scores") or []
        if scores:
            trajectory = " -> ".join(format_score(s) for s in scores if isinstance(s, (int, float)))
            console.print(f"\n[bold]Trajectory[/bold]\n  {trajectory}")

    commits = [e["data"] for e in events if e["type"] == "commit"]
    if commits:
        console.print("\n[bold]Commits[/bold]")
        for commit in commits:
            console.print(f"  [green]{str(commit.get('hash', ''))[:8]}[/green] {commit.get('message', '')}")
