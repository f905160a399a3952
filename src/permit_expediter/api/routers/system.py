"""System endpoints: health check."""

from fastapi import APIRouter

from permit_expediter import __version__

router = APIRouter(tags=["system"])


@router.get("/api/health")
def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "version": __version__}
