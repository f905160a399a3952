"""Serve command: run the HTTP API with uvicorn."""

import typer

from permit_expediter.cli._app import app
from permit_expediter.cli._common import init_command
from permit_expediter.cli._console import print_ok


@app.command("serve", help="Run the permit build API.")
def serve_cmd(
    ctx: typer.Context,
    host: str = typer.Option("127.0.0.1", "--host", help="Bind address"),
    port: int = typer.Option(8000, "--port", help="Bind port"),
):
    """Start uvicorn serving permit_expediter.api.main:app."""
    import uvicorn

    settings = init_command(ctx)
    print_ok(f"Serving on http://{host}:{port} (workspace {settings.workspace_dir})")
    uvicorn.run("permit_expediter.api.main:app", host=host, port=port, log_config=None)
