# Copyright (c) Syntropy Systems
"""polish run command."""
from __future__ import annotations

from threading import Event, Thread
from typing import TYPE_CHECKING, Optional

import typer
from rich.console import Console
from rich.table import Table

from polish.cli.render import describe_event, format_duration, format_score
from polish.config import load_config, require_polish_dir, validate_config
from polish.errors import PolishError
from polish.session import create_session_record, run_session

if TYPE_CHECKING:
    from polish.controller import PolishController
    from polish.events import SessionEventBus, Subscription
    from polish.models import PolishResult

console = Console()


class _SessionThread:
    """Runs a session off the main thread so Ctrl-C can abort it cleanly."""

    def __init__(self, **session_kwargs: object) -> None:
        self.kwargs = session_kwargs
        self.ready = Event()
        self.controller: Optional[PolishController] = None
        self.subscription: Optional[Subscription] = None
        self.result: Optional[PolishResult] = None
        self.error: Optional[BaseException] = None
        self.thread = Thread(target=self._run, name="polish-session", daemon=True)

    def _on_start(self, controller: PolishController, bus: SessionEventBus) -> None:
        self.controller = controller
        self.subscription = bus.subscribe()
        self.ready.set()

    def _run(self) -> None:
        try:
            self.result = run_session(on_start=self._on_start, **self.kwargs)  # type: ignore[arg-type]
        except Exception as e:  # noqa: BLE001
            self.error = e
        finally:
            self.ready.set()

    def start(self) -> None:
        self.thread.start()

    def abort(self) -> None:
        if self.controller is not None:
            self.controller.abort("user_stopped")


def run(
    mission: Optional[str] = typer.Option(
        None,
        "--mission", "-m",
        help="Implement this feature first, then polish the result",
    ),
    target: Optional[float] = typer.Option(
        None,
        "--target", "-t",
        help="Score (0-100) at which to stop",
    ),
    max_iterations: Optional[int] = typer.Option(
        None,
        "--max-iterations", "-n",
        help="Maximum number of fix attempts",
    ),
    max_duration: Optional[int] = typer.Option(
        None,
        "--max-duration",
        help="Wall-clock budget in minutes",
    ),
    plateau: Optional[str] = typer.Option(
        None,
        "--plateau",
        help="Plateau detection mode: stalled or llm",
    ),
    model: Optional[str] = typer.Option(
        None,
        "--model",
        help="Model used by the fix agent",
    ),
    push: Optional[bool] = typer.Option(
        None,
        "--push/--no-push",
        help="Push the session branch when it has commits",
    ),
    create_pr: Optional[bool] = typer.Option(
        None,
        "--pr/--no-pr",
        help="Open a GitHub pull request (needs GITHUB_TOKEN)",
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose", "-v",
        help="Show agent text output",
    ),
) -> None:
    """Run the polish loop on an isolated branch.

    Scores the project, asks the agent for one atomic fix at a time, and keeps
    only the changes that raise the score. Press Ctrl-C to stop.
    """
    try:
        polish_dir = require_polish_dir()
        if plateau is not None and plateau not in ("stalled", "llm"):
            msg = f"--plateau must be 'stalled' or 'llm', got {plateau!r}"
            raise PolishError(msg)
        config = load_config(polish_dir).with_overrides(
            target=target,
            max_iterations=max_iterations,
            max_duration=max_duration * 60_000 if max_duration is not None else None,
            plateau_detection=plateau,
            model=model,
            push=push,
            create_pr=create_pr,
        )
        validate_config(config)
        session_id = create_session_record(polish_dir, mission=mission)
    except (PolishError, RuntimeError) as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from e

    console.print(f"[bold]polish[/bold] session [cyan]{session_id}[/cyan]")
    console.print(f"  [dim]target:[/dim] {config.target:g}")
    console.print(f"  [dim]metrics:[/dim] {', '.join(m.name for m in config.metrics)}")
    console.print()

    session = _SessionThread(
        polish_dir=polish_dir,
        config=config,
        session_id=session_id,
        mission=mission,
    )
    session.start()

    try:
        session.ready.wait()
        _render(session, verbose)
    except KeyboardInterrupt:
        console.print("\n[yellow]Stopping, rolling back uncommitted work...[/yellow]")
        session.abort()
        try:
            _render(session, verbose)
        except KeyboardInterrupt:
            console.print("[red]Interrupted again, exiting without cleanup[/red]")
            raise typer.Exit(130) from None

    session.thread.join()

    if session.error is not None:
        console.print(f"[red]Error:[/red] {session.error}")
        raise typer.Exit(1)
    if session.result is None:
        console.print("[red]Error:[/red] Session ended without a result")
        raise typer.Exit(1)

    _print_result(session.result)
    if session.result.reason == "error":
        raise typer.Exit(1)


def _render(session: _SessionThread, verbose: bool) -> None:
    subscription = session.subscription
    if subscription is None:
        return
    while not subscription.ended:
        event = subscription.get(timeout=0.2)
        if event is None:
            if not session.thread.is_alive():
                break
            continue
        line = describe_event(event.type, event.data, verbose=verbose)
        if line:
            console.print(line)


def _print_result(result: PolishResult) -> None:
    console.print()
    table = Table(show_header=False, box=None)
    table.add_column(style="dim")
    table.add_column()

    initial = result.initial_score.score if result.initial_score else None
    final = result.final_score.score if result.final_score else None
    table.add_row("Reason", result.reason)
    table.add_row("Score", f"{format_score(initial)} -> {format_score(final)}")
    table.add_row("Iterations", str(result.iterations))
    table.add_row("Commits", str(len(result.commits)))
    table.add_row("Duration", format_duration(result.duration_seconds))
    if result.branch_name:
        table.add_row("Branch", result.branch_name)
    if result.pr_url:
        table.add_row("Pull request", result.pr_url)
    if result.error:
        table.add_row("Error", f"[red]{result.error}[/red]")
    console.print(table)

    for commit in result.commits:
        console.print(f"  [green]{commit.hash[:8]}[/green] {commit.message}")
