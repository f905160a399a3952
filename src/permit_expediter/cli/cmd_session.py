"""Session command: issue API bearer tokens for a tenant user."""

from typing import Optional

import typer

from permit_expediter.api.services.auth import SESSION_TIMEOUT_HOURS, AuthService
from permit_expediter.cli._app import app
from permit_expediter.cli._common import init_command
from permit_expediter.cli._console import output_result, print_ok, stdout_console


@app.command("create-session", help="Issue a bearer token for the HTTP API.")
def create_session_cmd(
    ctx: typer.Context,
    user_id: str = typer.Option(..., "--user-id", help="User the token belongs to"),
    tenant_id: Optional[str] = typer.Option(None, "--tenant-id", help="Tenant the user may build for"),
    hours: int = typer.Option(SESSION_TIMEOUT_HOURS, "--hours", min=1, help="Token lifetime"),
):
    settings = init_command(ctx)
    session = AuthService(settings.config_dir).create_session(user_id, tenant_id, timeout_hours=hours)

    if ctx.obj["json"]:
        output_result(
            {"token": session.token, "user_id": session.user_id,
             "tenant_id": session.tenant_id, "expires_at": session.expires_at},
            ctx=ctx,
        )
        return
    if not ctx.obj["quiet"]:
        print_ok(f"Session for {user_id} expires {session.expires_at}")
    stdout_console.print(session.token, markup=False, highlight=False)
