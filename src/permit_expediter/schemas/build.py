"""Request and response models for the permit build operation."""

from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from permit_expediter.schemas.findings import MissingItem, ValidationError


class BuildOptions(BaseModel):
    """Per-request switches for a permit build.

    ``auto_fetch_parcel`` and ``auto_extract_approval_fields`` are accepted for
    compatibility; parcel data is only read from the cache and approval
    documents are never OCR'd by the build.
    """

    model_config = ConfigDict(extra="forbid")

    force_rebuild: bool = False
    auto_detect_jurisdiction: bool = True
    auto_fetch_parcel: bool = False
    parcel_cache_ttl_days: Optional[int] = Field(default=None, ge=0)
    auto_link_approvals: bool = True
    auto_extract_approval_fields: bool = False
    generate_application_pdf: bool = True
    generate_packet_zip: bool = False
    include_checklist_pdf: bool = False
    dry_run: bool = False


class BuildRequest(BaseModel):
    """Body of ``POST /api/permits/build``."""

    model_config = ConfigDict(extra="forbid")

    job_id: UUID
    estimate_id: Optional[UUID] = None
    options: BuildOptions = Field(default_factory=BuildOptions)


class Jurisdiction(BaseModel):
    state: Optional[str] = None
    county_name: Optional[str] = None
    city_name: Optional[str] = None
    jurisdiction_type: Optional[str] = None


class PermitCaseSummary(BaseModel):
    id: str
    status: str
    job_id: str
    estimate_id: Optional[str] = None
    authority_id: Optional[str] = None
    template_id: Optional[str] = None
    jurisdiction: Jurisdiction = Field(default_factory=Jurisdiction)


class DocumentOutput(BaseModel):
    """A document generated during the build."""

    id: Optional[str] = None
    kind: str
    title: str
    bucket: str
    path: str
    signed_url: Optional[str] = None
    content_type: str


class NextAction(BaseModel):
    """Human-facing follow-up suggested by the build."""

    action: str
    label: str
    url: Optional[str] = None
    items: Optional[List[str]] = None
    when: Optional[Dict[str, Any]] = None


class BuildResult(BaseModel):
    """Composed result of a permit build."""

    permit_case: PermitCaseSummary
    missing_items: List[MissingItem] = Field(default_factory=list)
    validation_errors: List[ValidationError] = Field(default_factory=list)
    application_field_values: Dict[str, Any] = Field(default_factory=dict)
    calculation_results: Dict[str, Any] = Field(default_factory=dict)
    documents: List[DocumentOutput] = Field(default_factory=list)
    next_actions: List[NextAction] = Field(default_factory=list)
    context_preview: Dict[str, Any] = Field(default_factory=dict)
    sources_used: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
