"""Permit case, case event and permit document schemas."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


def utc_now_iso() -> str:
    """Current UTC time as an ISO 8601 string with a ``Z`` suffix."""
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class PermitCaseStatus(str, Enum):
    """Lifecycle states of a permit case.

    The build orchestrator only moves cases between DRAFT_BUILT and
    WAITING_ON_DOCS; the remaining states are set by other collaborators.
    """

    NOT_STARTED = "NOT_STARTED"
    DRAFT_BUILT = "DRAFT_BUILT"
    WAITING_ON_DOCS = "WAITING_ON_DOCS"
    READY_TO_SUBMIT = "READY_TO_SUBMIT"
    SUBMITTED = "SUBMITTED"
    IN_REVIEW = "IN_REVIEW"
    CORRECTIONS_REQUIRED = "CORRECTIONS_REQUIRED"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    VOID = "VOID"


class PermitEventType(str, Enum):
    """Types of append-only permit case events."""

    CREATED = "CREATED"
    JURISDICTION_DETECTED = "JURISDICTION_DETECTED"
    TEMPLATE_SELECTED = "TEMPLATE_SELECTED"
    PROPERTY_DATA_FETCHED = "PROPERTY_DATA_FETCHED"
    APPROVALS_LINKED = "APPROVALS_LINKED"
    CALCS_RUN = "CALCS_RUN"
    APPLICATION_GENERATED = "APPLICATION_GENERATED"
    PACKET_GENERATED = "PACKET_GENERATED"
    CHECKLIST_GENERATED = "CHECKLIST_GENERATED"
    SUBMITTED = "SUBMITTED"
    CORRECTION_NOTED = "CORRECTION_NOTED"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    ERROR = "ERROR"


class PermitDocKind(str, Enum):
    PERMIT_APPLICATION = "PERMIT_APPLICATION"
    PERMIT_PACKET = "PERMIT_PACKET"
    CHECKLIST = "CHECKLIST"
    NOTICE_OF_COMMENCEMENT = "NOTICE_OF_COMMENCEMENT"
    PRODUCT_APPROVAL = "PRODUCT_APPROVAL"
    MEASUREMENT_REPORT = "MEASUREMENT_REPORT"
    OTHER = "OTHER"


class PermitCase(BaseModel):
    """Persistent permit case keyed by (tenant, job, estimate).

    ``status`` is the only lifecycle field driven by the build orchestrator;
    the remaining summary fields hold the last computed build snapshot.
    """

    model_config = ConfigDict(use_enum_values=True, extra="ignore", validate_default=True)

    id: str
    tenant_id: str
    job_id: str
    estimate_id: Optional[str] = None
    authority_id: Optional[str] = None
    template_id: Optional[str] = None
    status: PermitCaseStatus = PermitCaseStatus.NOT_STARTED
    state: Optional[str] = None
    county_name: Optional[str] = None
    city_name: Optional[str] = None
    jurisdiction_type: Optional[str] = None
    application_field_values: Dict[str, Any] = Field(default_factory=dict)
    calculation_results: Dict[str, Any] = Field(default_factory=dict)
    missing_items: List[str] = Field(default_factory=list)
    validation_errors: List[Dict[str, Any]] = Field(default_factory=list)
    created_by: Optional[str] = None
    created_at: str = Field(default_factory=utc_now_iso)
    updated_at: str = Field(default_factory=utc_now_iso)


class PermitCaseEvent(BaseModel):
    """Append-only audit record for a permit case."""

    model_config = ConfigDict(use_enum_values=True, extra="ignore")

    id: Optional[str] = None
    tenant_id: str
    permit_case_id: str
    event_type: PermitEventType
    message: Optional[str] = None
    details: Dict[str, Any] = Field(default_factory=dict)
    created_by: Optional[str] = None
    created_at: str = Field(default_factory=utc_now_iso)


class PermitDocument(BaseModel):
    """Generated document stored in object storage."""

    model_config = ConfigDict(use_enum_values=True, extra="ignore")

    id: Optional[str] = None
    tenant_id: str
    permit_case_id: str
    kind: PermitDocKind
    title: str
    storage_bucket: str
    storage_path: str
    file_size_bytes: Optional[int] = None
    meta: Dict[str, Any] = Field(default_factory=dict)
    created_by: Optional[str] = None
    created_at: str = Field(default_factory=utc_now_iso)
