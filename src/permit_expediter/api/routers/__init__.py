"""API routers."""

from permit_expediter.api.routers import permits, system

__all__ = ["permits", "system"]
