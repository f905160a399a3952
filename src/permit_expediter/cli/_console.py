"""Rich consoles and output helpers shared by the commands."""

import json
from typing import Any, Iterable, Optional

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from permit_expediter.schemas.findings import Finding

# Status and human output go to stderr; data (--json) goes to stdout for jq.
# Neither pins a file object, so redirected streams are honored.
console = Console(stderr=True)
stdout_console = Console()

SEVERITY_STYLES = {"error": "red", "warning": "yellow", "info": "dim"}


def print_ok(msg: str) -> None:
    console.print(f"[green]✓[/green] {msg}")


def print_err(msg: str) -> None:
    console.print(f"[red]✗[/red] {msg}")


def output_result(data: Any, *, ctx: typer.Context, title: str = "") -> None:
    """Print a result as JSON on stdout (--json) or as a panel on stderr."""
    if ctx.obj.get("json"):
        stdout_console.print_json(data=data)
        return
    formatted = json.dumps(data, indent=2, ensure_ascii=False, default=str)
    if title:
        console.print(Panel(formatted, title=title, border_style="blue"))
    else:
        console.print(formatted)


def print_findings(findings: Iterable[Finding], *, title: str, empty: Optional[str] = None) -> None:
    """Render missing items or validation errors as a severity-colored table."""
    rows = list(findings)
    if not rows:
        if empty:
            console.print(f"[dim]{empty}[/dim]")
        return

    table = Table(title=title, show_lines=False)
    table.add_column("severity")
    table.add_column("key")
    table.add_column("message")
    for finding in rows:
        style = SEVERITY_STYLES.get(finding.severity, "")
        table.add_row(f"[{style}]{finding.severity}[/{style}]", finding.key, finding.message)
    console.print(table)
