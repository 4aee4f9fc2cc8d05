# Copyright (c) Syntropy Systems
"""polish logs command."""
from __future__ import annotations

import json
import time

import typer
from rich.console import Console

from polish.cli.render import describe_event
from polish.config import get_db_path, require_polish_dir
from polish.db import FINAL_STATUSES, get_connection, get_events, get_latest_events, get_session
from polish.models import TERMINAL_EVENTS

console = Console()

FOLLOW_POLL_INTERVAL = 0.5


def logs(
    session_id: str = typer.Argument(
        ...,
        help="Session ID (or unique prefix) to show events for",
    ),
    follow: bool = typer.Option(
        False,
        "--follow", "-f",
        help="Follow new events until the session finishes",
    ),
    last: int = typer.Option(
        0,
        "--last", "-n",
        help="Only show the last N events (0 shows all)",
    ),
    as_json: bool = typer.Option(
        False,
        "--json",
        help="Print raw events as JSON lines",
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose", "-v",
        help="Include agent text output",
    ),
) -> None:
    """Show the event log of a session.

    Use --follow to watch a running session.
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
        sid = session["id"]

        events = get_latest_events(conn, sid, limit=last) if last > 0 else get_events(conn, sid)
        if not events and not follow:
            console.print("[dim]No events yet[/dim]")
            return

        last_id = 0
        finished = False
        for event in events:
            _print_event(event, as_json, verbose)
            last_id = event["id"]
            finished = finished or event["type"] in TERMINAL_EVENTS

        if not follow:
            return

        try:
            while not finished:
                time.sleep(FOLLOW_POLL_INTERVAL)
                for event in get_events(conn, sid, after_id=last_id):
                    _print_event(event, as_json, verbose)
                    last_id = event["id"]
                    finished = finished or event["type"] in TERMINAL_EVENTS
                current = get_session(conn, sid)
                if current is None or current["status"] in FINAL_STATUSES:
                    # Drain anything written before the status flipped
                    for event in get_events(conn, sid, after_id=last_id):
                        _print_event(event, as_json, verbose)
                        last_id = event["id"]
                    break
        except KeyboardInterrupt:
            console.print("\n[dim]Stopped following events[/dim]")
    finally:
        conn.close()


def _print_event(event: dict, as_json: bool, verbose: bool) -> None:
    if as_json:
        typer.echo(json.dumps(event))
        return
    line = describe_event(event["type"], event["data"], verbose=verbose)
    if line:
        console.print(f"[dim]{event['timestamp']}[/dim] {line}")
