# Copyright (c) Syntropy Systems
"""Main CLI entry point for polish."""

import logging

import typer
from rich.console import Console
from rich.logging import RichHandler

from polish.cli.abort import abort
from polish.cli.hook import hook_app
from polish.cli.init_cmd import init
from polish.cli.logs import logs
from polish.cli.reset import reset
from polish.cli.run import run
from polish.cli.score import score
from polish.cli.server_cmd import server
from polish.cli.sessions import sessions, show
from polish.cli.status import status

app = typer.Typer(
    name="polish",
    help=(
        "Closed-loop code quality improvement. Score, fix one thing, "
        "keep it only if the score goes up."
    ),
    no_args_is_help=True,
    add_completion=False,
)


@app.callback()
def main(
    verbose: bool = typer.Option(
        False,
        "--verbose",
        help="Enable debug logging",
    ),
) -> None:
    """Configure logging for every command."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), rich_tracebacks=True, show_path=False)],
        force=True,
    )


# Register commands
_ = app.command()(init)
_ = app.command()(run)
_ = app.command()(score)
_ = app.command()(status)
_ = app.command()(sessions)
_ = app.command()(show)
_ = app.command()(logs)
_ = app.command()(abort)
_ = app.command()(reset)
_ = app.command()(server)

# Register hook sub-app
app.add_typer(hook_app, name="hook")


if __name__ == "__main__":
    app()
