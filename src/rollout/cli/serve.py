"""
CLI: ``rollout serve`` — start the trigger API server.
"""

from __future__ import annotations

import typer
import uvicorn

from rollout.cli.utils import console, load_settings


def serve(
    host: str | None = typer.Option(None, "--host", "-h", help="Bind address (default: settings)"),
    port: int | None = typer.Option(None, "--port", "-p", help="Bind port (default: settings)"),
    reload: bool = typer.Option(False, "--reload", help="Auto-reload on changes"),
    log_level: str = typer.Option("info", "--log-level"),
) -> None:
    """Start the rollout REST API server."""
    settings = load_settings()
    host = host or settings.api_host
    port = port or settings.api_port
    console.print(f"[bold green]Starting rollout API[/bold green] on {host}:{port}")
    uvicorn.run(
        "rollout.api:create_app",
        factory=True,
        host=host,
        port=port,
        reload=reload,
        log_level=log_level,
    )
