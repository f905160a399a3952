"""FastAPI dependencies for the permit build API.

This module provides:
- Settings access
- Store, object storage and orchestrator getters (module-level singletons)
- Authentication dependencies
"""

from typing import Optional

from fastapi import Depends, Header, HTTPException
from pydantic import BaseModel

from permit_expediter.api.services.auth import AuthService
from permit_expediter.config.settings import PermitBuilderSettings
from permit_expediter.pipeline.orchestrator import PermitBuildOrchestrator
from permit_expediter.startup import ensure_initialized
from permit_expediter.storage import FileObjectStorage, JsonFilePermitStore


# =============================================================================
# SETTINGS
# =============================================================================


def get_settings() -> PermitBuilderSettings:
    """Get the process settings (initializes on first use)."""
    return ensure_initialized()


# =============================================================================
# SERVICE GETTERS
# =============================================================================

_permit_store: Optional[JsonFilePermitStore] = None
_object_storage: Optional[FileObjectStorage] = None
_auth_service: Optional[AuthService] = None
_orchestrator: Optional[PermitBuildOrchestrator] = None


def get_permit_store() -> JsonFilePermitStore:
    """Get the permit data store (singleton)."""
    global _permit_store
    if _permit_store is None:
        _permit_store = JsonFilePermitStore(get_settings().workspace_dir)
    return _permit_store


def get_object_storage() -> FileObjectStorage:
    """Get the document object storage (singleton)."""
    global _object_storage
    if _object_storage is None:
        settings = get_settings()
        _object_storage = FileObjectStorage(settings.workspace_dir, settings.signing_secret)
    return _object_storage


def get_auth_service() -> AuthService:
    """Get AuthService instance (singleton)."""
    global _auth_service
    if _auth_service is None:
        _auth_service = AuthService(get_settings().config_dir)
    return _auth_service


def get_orchestrator() -> PermitBuildOrchestrator:
    """Get the build orchestrator (singleton)."""
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = PermitBuildOrchestrator(
            store=get_permit_store(),
            object_storage=get_object_storage(),
            settings=get_settings(),
        )
    return _orchestrator


# =============================================================================
# AUTHENTICATION
# =============================================================================


class CurrentUser(BaseModel):
    """Authenticated caller."""

    user_id: str
    tenant_id: Optional[str] = None


def get_current_user(authorization: Optional[str] = Header(None)) -> CurrentUser:
    """Dependency to get the current authenticated user from the Authorization header.

    Expects: Authorization: Bearer <token>

    Raises:
        HTTPException: 401 if not authenticated or the token is invalid.
    """
    if not authorization:
        raise HTTPException(status_code=401, detail="Not authenticated")

    if not authorization.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="Invalid authorization header")

    token = authorization[7:]  # Remove "Bearer " prefix

    session = get_auth_service().validate_session(token)
    if not session:
        raise HTTPException(status_code=401, detail="Invalid or expired session")

    return CurrentUser(user_id=session.user_id, tenant_id=session.tenant_id)


def require_tenant(current_user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
    """Dependency that requires the caller to be bound to a tenant.

    Raises:
        HTTPException: 403 if the session has no tenant.
    """
    if not current_user.tenant_id:
        raise HTTPException(status_code=403, detail="No tenant access")
    return current_user
