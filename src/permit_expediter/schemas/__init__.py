"""Pydantic schemas for permit case builds."""

from permit_expediter.schemas.build import (
    BuildOptions,
    BuildRequest,
    BuildResult,
    DocumentOutput,
    Jurisdiction,
    NextAction,
    PermitCaseSummary,
)
from permit_expediter.schemas.context import CanonicalContext
from permit_expediter.schemas.findings import (
    Finding,
    MissingItem,
    Severity,
    ValidationError,
    has_errors,
)
from permit_expediter.schemas.permit_case import (
    PermitCase,
    PermitCaseEvent,
    PermitCaseStatus,
    PermitDocKind,
    PermitDocument,
    PermitEventType,
)
from permit_expediter.schemas.template import (
    PermitTemplate,
    TemplateDocument,
    TemplateField,
    TemplateValidation,
    parse_template,
    parse_template_document,
)

__all__ = [
    # Build request/response
    "BuildOptions",
    "BuildRequest",
    "BuildResult",
    "DocumentOutput",
    "Jurisdiction",
    "NextAction",
    "PermitCaseSummary",
    # Context
    "CanonicalContext",
    # Findings
    "Finding",
    "MissingItem",
    "Severity",
    "ValidationError",
    "has_errors",
    # Permit case
    "PermitCase",
    "PermitCaseEvent",
    "PermitCaseStatus",
    "PermitDocKind",
    "PermitDocument",
    "PermitEventType",
    # Templates
    "PermitTemplate",
    "TemplateDocument",
    "TemplateField",
    "TemplateValidation",
    "parse_template",
    "parse_template_document",
]
