"""Build command: run a permit case build against the workspace."""

import asyncio
from typing import Optional

import typer
from pydantic import ValidationError

from permit_expediter.cli._app import app
from permit_expediter.cli._common import init_command
from permit_expediter.cli._console import console, output_result, print_err, print_findings, print_ok
from permit_expediter.errors import PermitBuildError
from permit_expediter.pipeline.orchestrator import PermitBuildOrchestrator
from permit_expediter.schemas.build import BuildOptions, BuildRequest
from permit_expediter.storage import FileObjectStorage, JsonFilePermitStore


@app.command("build", help="Build (or rebuild) a permit case for a job.")
def build_cmd(
    ctx: typer.Context,
    tenant_id: str = typer.Option(..., "--tenant-id", help="Tenant owning the job"),
    job_id: str = typer.Option(..., "--job-id", help="Job UUID"),
    estimate_id: Optional[str] = typer.Option(None, "--estimate-id", help="Estimate UUID"),
    force_rebuild: bool = typer.Option(False, "--force-rebuild", help="Always create a new case"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Compute without saving or generating documents"),
    no_documents: bool = typer.Option(False, "--no-documents", help="Skip the application document"),
    packet: bool = typer.Option(False, "--packet", help="Generate the packet manifest"),
    checklist: bool = typer.Option(False, "--checklist", help="Generate the checklist document"),
    user_id: str = typer.Option("cli", "--user-id", help="Recorded as created_by"),
):
    """Run the permit build pipeline and print the result."""
    settings = init_command(ctx)

    try:
        request = BuildRequest(
            job_id=job_id,
            estimate_id=estimate_id,
            options=BuildOptions(
                force_rebuild=force_rebuild,
                dry_run=dry_run,
                generate_application_pdf=not no_documents,
                generate_packet_zip=packet,
                include_checklist_pdf=checklist,
            ),
        )
    except ValidationError as e:
        print_err(f"Invalid build request: {e}")
        raise SystemExit(2)

    orchestrator = PermitBuildOrchestrator(
        store=JsonFilePermitStore(settings.workspace_dir),
        object_storage=FileObjectStorage(settings.workspace_dir, settings.signing_secret),
        settings=settings,
    )

    try:
        result = asyncio.run(orchestrator.build(tenant_id, request, user_id=user_id))
    except PermitBuildError as e:
        print_err(f"{e.code.value}: {e.message}")
        raise SystemExit(1)

    if ctx.obj["json"]:
        output_result(result.model_dump(mode="json"), ctx=ctx)
        return
    if ctx.obj["quiet"]:
        return

    case = result.permit_case
    print_ok(f"Permit case {case.id}: [bold]{case.status}[/bold]")
    console.print(f"  Authority:  {case.authority_id or '-'}")
    console.print(f"  Template:   {case.template_id or '-'}")
    console.print(f"  Sources:    {', '.join(result.sources_used)}")
    for warning in result.warnings:
        console.print(f"  [yellow]Warning:[/yellow] {warning}")

    print_findings(result.missing_items, title="Missing items")
    print_findings(result.validation_errors, title="Validation errors")

    if result.application_field_values:
        output_result(result.application_field_values, ctx=ctx, title="Field values")
    for doc in result.documents:
        console.print(f"  [blue]{doc.kind}[/blue] {doc.bucket}/{doc.path}")
