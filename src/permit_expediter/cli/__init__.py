"""Typer command-line interface.

Usage:
    permit-expediter --help
    python -m permit_expediter.cli build --help
"""

from permit_expediter.cli._app import app

# Register command modules (side-effect imports)
import permit_expediter.cli.cmd_build  # noqa: F401
import permit_expediter.cli.cmd_eval  # noqa: F401
import permit_expediter.cli.cmd_template  # noqa: F401
import permit_expediter.cli.cmd_serve  # noqa: F401
import permit_expediter.cli.cmd_session  # noqa: F401

__all__ = ["app"]
