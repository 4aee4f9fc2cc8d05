# Copyright (c) Syntropy Systems
"""Shared rich rendering helpers for polish commands."""
from __future__ import annotations

from datetime import datetime, timezone
from typing import TYPE_CHECKING, Optional

from rich.table import Table

if TYPE_CHECKING:
    from polish.models import JSONObject, ScoreResult

STATUS_STYLES = {
    "pending": "dim",
    "running": "blue",
    "completed": "green",
    "failed": "red",
    "aborted": "yellow",
}


def status_markup(status: str) -> str:
    style = STATUS_STYLES.get(status, "white")
    return f"[{style}]{status}[/{style}]"


def format_duration(seconds: float | None) -> str:
    """Format duration in seconds to human readable."""
    if seconds is None:
        return "-"

    total = int(seconds)
    if total < 60:
        return f"{total}s"
    if total < 3600:
        m, s = divmod(total, 60)
        return f"{m}m {s}s"
    h, rem = divmod(total, 3600)
    m, s = divmod(rem, 60)
    return f"{h}h {m}m"


def format_time_ago(timestamp: str | None) -> str:
    """Format a timestamp as time ago."""
    if not timestamp:
        return "-"

    try:
        ts = datetime.fromisoformat(timestamp.replace("Z", "+00:00"))
        seconds = int((datetime.now(timezone.utc) - ts).total_seconds())
    except (TypeError, ValueError):
        return "-"
    else:
        if seconds < 60:
            return f"{seconds}s ago"
        if seconds < 3600:
            return f"{seconds // 60}m ago"
        return f"{seconds // 3600}h ago"


def format_score(score: Optional[float]) -> str:
    return "-" if score is None else f"{score:.1f}"


def build_score_table(score: ScoreResult, title: Optional[str] = None) -> Table:
    """Per-metric breakdown of a scoring pass."""
    table = Table(title=title, show_header=True, header_style="bold")
    table.add_column("Metric")
    table.add_column("Raw", justify="right")
    table.add_column("Score", justify="right")
    table.add_column("Target", justify="right")
    table.add_column("Weight", justify="right")
    table.add_column("Direction", style="dim")

    for m in score.metrics:
        style = "green" if m.normalized_score >= 100 else "yellow"
        raw = "[red]error[/red]" if m.raw_value is None else f"{m.raw_value:g}"
        table.add_row(
            m.name,
            raw,
            f"[{style}]{m.normalized_score:.1f}[/{style}]",
            f"{m.target:g}",
            f"{m.weight:g}",
            "higher" if m.higher_is_better else "lower",
        )

    table.add_section()
    table.add_row("[bold]total[/bold]", "", f"[bold]{score.score:.1f}[/bold]", "", "", "")
    return table


def _short(value: object, limit: int = 80) -> str:
    text = str(value).replace("\n", " ")
    return text if len(text) <= limit else text[: limit - 3] + "..."


def describe_event(event_type: str, data: JSONObject, verbose: bool = False) -> Optional[str]:
    """One line of rich markup for an event, or None to hide it."""
    if event_type == "init":
        return f"[bold]Initial score:[/bold] {format_score(_num(data.get('initial_score')))}"
    if event_type == "phase":
        return f"[bold cyan]== {data.get('phase')} ==[/bold cyan]"
    if event_type == "status":
        return f"[dim]{data.get('message', '')}[/dim]"
    if event_type == "score":
        delta = _num(data.get("delta")) or 0.0
        if data.get("iteration") == 0:
            return None
        sign = "green" if delta > 0 else "dim"
        return (
            f"  score {format_score(_num(data.get('score')))} "
            f"[{sign}]({delta:+.1f})[/{sign}]"
        )
    if event_type == "strategy":
        return (
            f"[bold]#{data.get('iteration')}[/bold] {data.get('name')} "
            f"[dim]-> {data.get('focus')}[/dim]"
        )
    if event_type == "agent":
        if data.get("kind") == "tool" and data.get("phase") == "PreToolUse":
            return f"  [dim]tool[/dim] {data.get('tool')} {_short(data.get('input', ''), 60)}"
        if data.get("kind") == "text" and verbose:
            return f"  [dim]{_short(data.get('message', ''))}[/dim]"
        return None
    if event_type == "commit":
        return (
            f"  [green]commit[/green] {str(data.get('hash', ''))[:8]} "
            f"{data.get('message', '')}"
        )
    if event_type == "rollback":
        return f"  [yellow]rollback[/yellow] {data.get('reason')}: {data.get('message', '')}"
    if event_type == "error":
        return f"[red]Error:[/red] {data.get('message', '')}"
    if event_type == "aborted":
        return f"[yellow]Aborted[/yellow] ({data.get('reason')})"
    if event_type == "worktree_created":
        return f"[dim]Worktree {data.get('path')} on {data.get('branch_name')}[/dim]"
    if event_type == "worktree_cleanup":
        return f"[dim]Removed worktree {data.get('path')}[/dim]"
    if event_type == "result":
        return (
            f"[bold]Finished:[/bold] {data.get('stopped_reason')} "
            f"({format_score(_num(data.get('initial_score')))} -> "
            f"{format_score(_num(data.get('final_score')))})"
        )
    return None


def _num(value: object) -> Optional[float]:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return float(value)
    return None
