"""check-template command: strictly parse a template and its calc expressions."""

from pathlib import Path

import typer

from permit_expediter.cli._app import app
from permit_expediter.cli._common import load_data_file, setup_logging
from permit_expediter.cli._console import console, output_result, print_err, print_ok
from permit_expediter.errors import TemplateParseError
from permit_expediter.runtime.expressions import validate_expression
from permit_expediter.schemas.template import parse_template_document


@app.command("check-template", help="Validate a permit template document.")
def check_template_cmd(
    ctx: typer.Context,
    template_file: Path = typer.Argument(..., help="Template JSON/YAML (document or table row)"),
):
    """Parse a template and check every calc expression."""
    setup_logging(verbose=ctx.obj["verbose"], quiet=ctx.obj["quiet"])

    if not template_file.exists():
        print_err(f"Template file not found: {template_file}")
        raise SystemExit(1)

    raw = load_data_file(template_file)
    # Accept a permit_application_templates row as well as a bare document
    if isinstance(raw, dict) and "template_json" in raw:
        raw = raw["template_json"]

    try:
        document = parse_template_document(raw, str(template_file))
    except TemplateParseError as e:
        print_err(f"Template is invalid: {e.message}")
        raise SystemExit(1)

    problems = []
    for tf in document.fields:
        if tf.calc is None:
            continue
        for err in validate_expression(tf.calc.expr):
            problems.append({"field": tf.key, "code": err.code.value, "message": err.message})

    summary = {
        "template_key": document.template_key,
        "permit_type": document.permit_type,
        "fields": len(document.fields),
        "calc_fields": sum(1 for f in document.fields if f.calc is not None),
        "validations": len(document.validations),
        "problems": problems,
    }

    if ctx.obj["json"]:
        output_result(summary, ctx=ctx)
    else:
        for problem in problems:
            print_err(f"{problem['field']}: {problem['code']}: {problem['message']}")
        if not problems:
            print_ok(
                f"Template OK: {summary['fields']} fields "
                f"({summary['calc_fields']} calculated), {summary['validations']} validations"
            )
        elif not ctx.obj["quiet"]:
            console.print(f"{len(problems)} expression problem(s)")

    if problems:
        raise SystemExit(1)
