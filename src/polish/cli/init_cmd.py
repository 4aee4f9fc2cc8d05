# Copyright (c) Syntropy Systems
"""polish init command."""

from pathlib import Path

import typer
from rich.console import Console

from polish.config import CONFIG_FILE_NAME, DEFAULT_CONFIG_YAML, POLISH_DIR_NAME
from polish.db import init_db

console = Console()


def exclude_from_git(project: Path) -> bool:
    """Add .polish/ to .git/info/exclude. Returns True if it was added."""
    git_dir = project / ".git"
    if not git_dir.is_dir():
        return False

    exclude_path = git_dir / "info" / "exclude"
    exclude_path.parent.mkdir(parents=True, exist_ok=True)
    entry = f"{POLISH_DIR_NAME}/"

    existing = exclude_path.read_text() if exclude_path.exists() else ""
    if entry in existing.splitlines():
        return False

    with exclude_path.open("a") as f:
        if existing and not existing.endswith("\n"):
            f.write("\n")
        f.write(f"{entry}\n")
    return True


def init(
    path: Path = typer.Argument(
        Path(),
        help="Directory to initialize (default: current directory)",
    ),
) -> None:
    """Initialize a new polish project.

    Creates a .polish directory with configuration and database.
    """
    target = path.resolve()
    polish_dir = target / POLISH_DIR_NAME

    if polish_dir.exists():
        console.print(f"[yellow]Already initialized:[/yellow] {polish_dir}")
        return

    # Create directory structure
    polish_dir.mkdir(parents=True)
    state_dir = polish_dir / "state"
    state_dir.mkdir()

    config_path = polish_dir / CONFIG_FILE_NAME
    config_path.write_text(DEFAULT_CONFIG_YAML)

    # Initialize database
    db_path = polish_dir / "polish.db"
    init_db(db_path)

    excluded = exclude_from_git(target)

    console.print(f"[green]Initialized polish project:[/green] {polish_dir}")
    console.print(f"  [dim]config:[/dim] {config_path}")
    console.print(f"  [dim]database:[/dim] {db_path}")
    if excluded:
        console.print("  [dim]git:[/dim] added .polish/ to .git/info/exclude")
    console.print()
    console.print("Edit the metrics in config.yaml, then run [bold]polish score[/bold].")
