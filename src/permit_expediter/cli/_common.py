"""Shared CLI utilities."""

import json
import logging
from pathlib import Path
from typing import Any

import typer
import yaml
from rich.logging import RichHandler

from permit_expediter.cli._console import console
from permit_expediter.config.settings import PermitBuilderSettings
from permit_expediter.startup import ensure_initialized as _ensure_initialized

logger = logging.getLogger(__name__)


def setup_logging(*, verbose: bool = False, quiet: bool = False) -> None:
    """Configure logging with Rich handler."""
    if verbose:
        level = logging.DEBUG
    elif quiet:
        level = logging.WARNING
    else:
        level = logging.INFO

    handler = RichHandler(
        console=console,
        show_time=True,
        show_path=False,
        markup=False,
        rich_tracebacks=True,
    )

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)

    # Suppress noisy third-party loggers
    for name in ("uvicorn.access", "httpx", "httpcore", "asyncio"):
        logging.getLogger(name).setLevel(logging.WARNING)


def init_command(ctx: typer.Context) -> PermitBuilderSettings:
    """Set up logging and load settings for a command."""
    setup_logging(verbose=ctx.obj["verbose"], quiet=ctx.obj["quiet"])
    return _ensure_initialized(ctx.obj.get("workspace"))


def load_data_file(path: Path) -> Any:
    """Load a JSON or YAML file (by extension; .yaml/.yml are YAML)."""
    with open(path, "r", encoding="utf-8") as f:
        if path.suffix.lower() in (".yaml", ".yml"):
            return yaml.safe_load(f)
        return json.load(f)
