# Copyright (c) Syntropy Systems
"""polish abort command."""
from __future__ import annotations

import typer
from rich.console import Console

from polish.config import get_db_path, require_polish_dir
from polish.db import FINAL_STATUSES, get_connection, get_session, request_abort

console = Console()


def abort(
    session_id: str = typer.Argument(
        ...,
        help="Session ID (or unique prefix) to stop",
    ),
) -> None:
    """Stop a session.

    For pending sessions: marks as aborted immediately.
    For running sessions: signals the controller to roll back and stop.
    """
    try:
        polish_dir = require_polish_dir()
    except RuntimeError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from e

    conn = get_connection(get_db_path(polish_dir))
    try:
        session = get_session(conn, session_id)
        if session is None:
            console.print(f"[red]Error:[/red] Session {session_id} not found")
            raise typer.Exit(1)

        if session["status"] in FINAL_STATUSES:
            console.print(f"[yellow]Session {session['id']} is already {session['status']}[/yellow]")
            return

        old_status = request_abort(conn, session["id"])
    finally:
        conn.close()

    if old_status == "pending":
        console.print(f"[green]Aborted session {session['id']}[/green]")
    else:
        console.print(f"[yellow]Abort requested for session {session['id']}[/yellow]")
        console.print("[dim]Uncommitted work will be rolled back shortly[/dim]")
