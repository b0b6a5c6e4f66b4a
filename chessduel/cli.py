"""Command-line interface for chessduel."""

from typing import Optional

import typer
import uvicorn
from rich.console import Console

from chessduel import __version__
from chessduel.config import load_settings
from chessduel.exceptions import ConfigError
from chessduel.logging_utils import setup_logging

app = typer.Typer(
    name="chessduel",
    help="chessduel: play chess against a UCI engine",
    add_completion=False,
)
console = Console()


@app.command()
def version() -> None:
    """Print version information."""
    console.print(f"[bold blue]chessduel[/bold blue] v{__version__}")


@app.command()
def serve(
    config: Optional[str] = typer.Option(None, "--config", "-c", help="Path to a YAML config file"),
    host: str = typer.Option("127.0.0.1", "--host", help="Interface to bind"),
    port: int = typer.Option(8000, "--port", "-p", help="Port to listen on"),
    overrides: Optional[list[str]] = typer.Option(
        None, "--set", help="Config override, e.g. engine.request_timeout=5"
    ),
) -> None:
    """Run the game server."""
    try:
        settings = load_settings(config, overrides)
    except ConfigError as exc:
        console.print(f"[bold red]Config error:[/bold red] {exc}")
        raise typer.Exit(code=1)

    setup_logging(settings.log_level, settings.log_file)

    from chessduel.server import create_app

    console.print(
        f"[bold green]Serving[/bold green] on http://{host}:{port} "
        f"with engine: {' '.join(settings.engine.command)}"
    )
    # uvicorn has no SUCCESS level
    uvicorn_level = settings.log_level.lower()
    if uvicorn_level not in uvicorn.config.LOG_LEVELS:
        uvicorn_level = "info"
    uvicorn.run(create_app(settings), host=host, port=port, log_level=uvicorn_level)


if __name__ == "__main__":
    app()
