"""API services."""

from .auth import AuthService, Session

__all__ = ["AuthService", "Session"]
