# Copyright (c) Syntropy Systems
"""polish reset command."""
from __future__ import annotations

from typing import Optional

import typer
from rich.console import Console

from polish.config import get_hook_state_path, get_state_dir, require_polish_dir
from polish.state import reset_state

console = Console()


def reset(
    session_id: Optional[str] = typer.Argument(
        None,
        help="Only reset the state of this session",
    ),
) -> None:
    """Reset loop state.

    Clears the stop-hook state and every per-session state snapshot, so the
    next run starts counting iterations and stalls from zero.
    """
    try:
        polish_dir = require_polish_dir()
    except RuntimeError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from e

    state_dir = get_state_dir(polish_dir)
    if session_id is not None:
        paths = [state_dir / f"{session_id}.json"]
    else:
        paths = [get_hook_state_path(polish_dir)]
        if state_dir.is_dir():
            paths.extend(sorted(state_dir.glob("*.json")))

    removed = 0
    for path in paths:
        if path.exists():
            reset_state(path)
            removed += 1

    if removed:
        console.print(f"[green]Reset {removed} state file(s)[/green]")
    else:
        console.print("[dim]No state to reset[/dim]")
