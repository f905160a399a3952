"""Eval command: evaluate a calculation expression against a context file."""

from pathlib import Path
from typing import Optional

import typer

from permit_expediter.cli._app import app
from permit_expediter.cli._common import load_data_file, setup_logging
from permit_expediter.cli._console import output_result, print_err, stdout_console
from permit_expediter.runtime.expressions import evaluate


@app.command("eval", help="Evaluate an expression against a JSON/YAML context.")
def eval_cmd(
    ctx: typer.Context,
    expression: str = typer.Argument(..., help="Expression, e.g. \"round(measurements.squares * 1.1, 1)\""),
    context_file: Optional[Path] = typer.Option(
        None, "--context", "-c", help="JSON or YAML file with the context object"
    ),
):
    """Evaluate one expression and print its value or errors."""
    setup_logging(verbose=ctx.obj["verbose"], quiet=ctx.obj["quiet"])

    data = {}
    if context_file is not None:
        if not context_file.exists():
            print_err(f"Context file not found: {context_file}")
            raise SystemExit(1)
        data = load_data_file(context_file) or {}

    result = evaluate(expression, data)

    if ctx.obj["json"]:
        output_result(
            {"value": result.value, "errors": [e.to_dict() for e in result.errors]}, ctx=ctx
        )
    elif result.ok:
        stdout_console.print(repr(result.value), markup=False, highlight=False)
    else:
        for err in result.errors:
            where = f" (position {err.position})" if err.position is not None else ""
            print_err(f"{err.code.value}: {err.message}{where}")

    if not result.ok:
        raise SystemExit(1)
