"""Error taxonomy for permit case builds.

Provides stable error codes and exception types. Fatal errors abort the build
and are rendered by the API as a ``{code, message, details}`` envelope;
recoverable errors (expressions, document generation, event writes) are
handled inside the pipeline and never reach this layer.
"""

from enum import Enum
from typing import Any, Dict, Optional


class ErrorCode(str, Enum):
    """Stable error codes for the build API."""

    INVALID_REQUEST = "INVALID_REQUEST"  # Request body failed validation
    UNAUTHORIZED = "UNAUTHORIZED"  # No or invalid session
    FORBIDDEN = "FORBIDDEN"  # Authenticated but no tenant access
    NOT_FOUND = "NOT_FOUND"  # Required upstream entity missing
    METHOD_NOT_ALLOWED = "METHOD_NOT_ALLOWED"
    PERSISTENCE_ERROR = "PERSISTENCE_ERROR"  # Required write failed
    UPSTREAM_TIMEOUT = "UPSTREAM_TIMEOUT"  # Store call exceeded its timeout
    TEMPLATE_INVALID = "TEMPLATE_INVALID"  # Template document failed to parse
    INTERNAL_ERROR = "INTERNAL_ERROR"  # Catch-all


class PermitBuildError(Exception):
    """Base class for errors that abort a permit build."""

    code: ErrorCode = ErrorCode.INTERNAL_ERROR
    http_status: int = 500

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_envelope(self) -> Dict[str, Any]:
        """Render the error as the API error envelope."""
        envelope: Dict[str, Any] = {"code": self.code.value, "message": self.message}
        if self.details:
            envelope["details"] = self.details
        return envelope


class NotFoundError(PermitBuildError):
    """A required entity (job, case, estimate, tenant) does not exist."""

    code = ErrorCode.NOT_FOUND
    http_status = 404

    def __init__(self, entity: str, entity_id: Optional[str]):
        super().__init__(
            f"{entity} not found: {entity_id}",
            {"entity": entity, "id": entity_id},
        )
        self.entity = entity
        self.entity_id = entity_id


class InvalidRequestError(PermitBuildError):
    """The incoming request is malformed."""

    code = ErrorCode.INVALID_REQUEST
    http_status = 400


class PersistenceError(PermitBuildError):
    """A required write to the data store failed."""

    code = ErrorCode.PERSISTENCE_ERROR
    http_status = 500


class StoreTimeoutError(PermitBuildError):
    """A data store call did not complete within its timeout."""

    code = ErrorCode.UPSTREAM_TIMEOUT
    http_status = 500


class TemplateParseError(Exception):
    """A template document does not match the strict template model.

    Not a build-aborting error: the orchestrator records it as a missing
    template item and continues without template fields.
    """

    code = ErrorCode.TEMPLATE_INVALID

    def __init__(self, message: str, template_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.template_id = template_id
