"""Permit case build endpoint."""

import logging

from fastapi import APIRouter, Depends

from permit_expediter.api.dependencies import CurrentUser, get_orchestrator, require_tenant
from permit_expediter.schemas.build import BuildRequest, BuildResult

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/permits", tags=["permits"])


@router.post("/build", response_model=BuildResult)
async def build_permit_case(
    request: BuildRequest,
    current_user: CurrentUser = Depends(require_tenant),
) -> BuildResult:
    """Build (or rebuild) the permit case for a job and estimate.

    Not-found, persistence and timeout failures propagate as ``PermitBuildError``
    and are rendered by the app's exception handlers.
    """
    logger.info(
        f"Build requested by {current_user.user_id} for job {request.job_id} "
        f"(estimate {request.estimate_id}, dry_run={request.options.dry_run})"
    )
    orchestrator = get_orchestrator()
    return await orchestrator.build(
        current_user.tenant_id, request, user_id=current_user.user_id
    )
