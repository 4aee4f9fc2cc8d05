"""CLI command for running the polish server."""

import typer
from rich.console import Console

from polish.config import require_polish_dir

console = Console()


def server(
    port: int = typer.Option(8080, "--port", "-p", help="Port to listen on"),
    host: str = typer.Option("127.0.0.1", "--host", "-h", help="Host to bind to"),
):
    """
    Start the polish HTTP API for the current project.

    The server starts sessions in the background, serves their event logs,
    and streams live events as server-sent events.

    Examples:

        # Serve on localhost
        polish server

        # Bind to all interfaces (for remote access)
        polish server --host 0.0.0.0 --port 8080
    """
    try:
        import uvicorn
    except ImportError:
        console.print("[red]Error:[/red] uvicorn is required for server mode.")
        console.print("Install with: pip install polish-loop[server]")
        raise typer.Exit(1)

    try:
        polish_dir = require_polish_dir()
    except RuntimeError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from e

    console.print("[bold]polish server[/bold]")
    console.print(f"  Host: {host}")
    console.print(f"  Port: {port}")
    console.print(f"  Project: {polish_dir.parent}")
    console.print()

    # Import and create app here to handle import errors gracefully
    try:
        from ..server.app import create_app
    except ImportError as e:
        console.print(f"[red]Error:[/red] Missing dependency: {e}")
        console.print("Install server dependencies with: pip install polish-loop[server]")
        raise typer.Exit(1)

    app = create_app(polish_dir)
    uvicorn.run(
        app,
        host=host,
        port=port,
        log_level="info",
    )
