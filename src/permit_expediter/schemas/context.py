"""Canonical permit context schema.

The canonical context is an immutable snapshot of every entity needed to fill
a permit application for one case. It is built once per build request by the
context aggregator and discarded after the response.

Every section has an "empty shape": when the source record is absent the
section is still present with its identifying fields set to ``None``, so
template paths such as ``parcel.legal_description`` always resolve to a value
or ``None`` and never raise. The empty shapes are module-level singletons
(``EMPTY_*``); the models are frozen so sharing them is safe.
"""

from __future__ import annotations

from typing import Any, Dict, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field


class _Section(BaseModel):
    """Base for all context sections: frozen, unknown keys ignored."""

    model_config = ConfigDict(frozen=True, extra="ignore")


# =============================================================================
# SHARED SHAPES
# =============================================================================


class Address(_Section):
    """Postal address with a composed single-line form."""

    line1: Optional[str] = None
    line2: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip: Optional[str] = None
    county: Optional[str] = None
    full: Optional[str] = None


class GeoPoint(_Section):
    lat: Optional[float] = None
    lng: Optional[float] = None


class StorageRef(_Section):
    """Location of a stored file (bucket + path)."""

    bucket: Optional[str] = None
    path: Optional[str] = None


# =============================================================================
# SECTIONS
# =============================================================================


class ContextMeta(_Section):
    """Build metadata: ids, timestamp, sources consulted, warnings."""

    schema_version: int = 1
    tenant_id: str
    permit_case_id: str
    job_id: str
    estimate_id: Optional[str] = None
    built_at: str
    sources_used: Tuple[str, ...] = ()
    warnings: Tuple[str, ...] = ()


class PermitCaseSection(_Section):
    id: Optional[str] = None
    status: Optional[str] = None
    jurisdiction_type: Optional[str] = None
    state: Optional[str] = None
    county_name: Optional[str] = None
    city_name: Optional[str] = None


class AuthoritySection(_Section):
    """Permitting authority (county or city building department)."""

    id: Optional[str] = None
    jurisdiction_type: Optional[str] = None
    state: Optional[str] = None
    county_name: Optional[str] = None
    city_name: Optional[str] = None
    portal_type: Optional[str] = None
    portal_url: Optional[str] = None
    application_modes: Tuple[str, ...] = ()
    default_required_attachments: Tuple[str, ...] = ()
    contact_email: Optional[str] = None
    contact_phone: Optional[str] = None
    notes: Optional[str] = None


class JobSection(_Section):
    """Job site: address, coordinates and structure attributes."""

    id: Optional[str] = None
    job_number: Optional[str] = None
    status: Optional[str] = None
    contact_id: Optional[str] = None
    address: Address = Field(default_factory=Address)
    geo: GeoPoint = Field(default_factory=GeoPoint)
    year_built: Optional[int] = None
    stories: Optional[int] = None
    structure_type: Optional[str] = None
    roof_deck_type: Optional[str] = None
    notes: Optional[str] = None


class OwnerContact(_Section):
    """Property owner, with a normalized mailing address."""

    contact_id: Optional[str] = None
    full_name: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None
    mailing_address: Address = Field(default_factory=Address)


class ParcelSection(_Section):
    """Cached government parcel record."""

    county_name: Optional[str] = None
    parcel_id: Optional[str] = None
    folio: Optional[str] = None
    owner_name: Optional[str] = None
    owner_mailing_address: Optional[str] = None
    situs_address: Optional[str] = None
    legal_description: Optional[str] = None
    subdivision: Optional[str] = None
    land_use: Optional[str] = None
    year_built: Optional[int] = None
    assessed_value: Optional[float] = None
    source_name: Optional[str] = None
    source_url: Optional[str] = None
    fetched_at: Optional[str] = None
    is_stale: bool = False


class MeasurementsSection(_Section):
    """Best-available roof measurement survey."""

    id: Optional[str] = None
    source: Optional[str] = None
    measured_at: Optional[str] = None
    total_roof_area_sqft: Optional[float] = None
    predominant_pitch: Optional[str] = None
    squares: Optional[float] = None
    stories: Optional[int] = None
    eaves_ft: Optional[float] = None
    rakes_ft: Optional[float] = None
    ridges_ft: Optional[float] = None
    valleys_ft: Optional[float] = None
    hips_ft: Optional[float] = None
    report: StorageRef = Field(default_factory=StorageRef)


class RoofSystem(_Section):
    category: Optional[str] = None
    display_name: Optional[str] = None


class EstimateSection(_Section):
    id: Optional[str] = None
    contract_total: Optional[float] = None
    scope: Optional[str] = None
    permit_type: Optional[str] = None
    primary_roof_system: RoofSystem = Field(default_factory=RoofSystem)


class ProductInfo(_Section):
    """A product from the product library with its approval numbers."""

    product_id: Optional[str] = None
    name: Optional[str] = None
    category: Optional[str] = None
    manufacturer: Optional[str] = None
    model: Optional[str] = None
    fl_product_approval_no: Optional[str] = None
    miami_dade_noa_no: Optional[str] = None
    approval_expires_on: Optional[str] = None
    hvhz_approved: bool = False
    extracted_fields: Dict[str, Any] = Field(default_factory=dict)


class ApprovalDocument(_Section):
    """Product approval document (FL approval, Miami-Dade NOA, ...)."""

    id: Optional[str] = None
    product_id: Optional[str] = None
    approval_kind: Optional[str] = None
    approval_number: Optional[str] = None
    revision: Optional[str] = None
    expires_on: Optional[str] = None
    storage_bucket: Optional[str] = None
    storage_path: Optional[str] = None


class ProductsSection(_Section):
    primary: ProductInfo = Field(default_factory=ProductInfo)
    components: Tuple[ProductInfo, ...] = ()
    approval_documents: Tuple[ApprovalDocument, ...] = ()


class CompanyAddress(_Section):
    full: Optional[str] = None


class Insurance(_Section):
    certificate_doc_id: Optional[str] = None


class Signature(_Section):
    signer_name: Optional[str] = None
    title: Optional[str] = None


class CompanySection(_Section):
    """Tenant profile used for the contractor/signature block."""

    tenant_id: Optional[str] = None
    legal_name: Optional[str] = None
    dba_name: Optional[str] = None
    license_number: Optional[str] = None
    address: CompanyAddress = Field(default_factory=CompanyAddress)
    phone: Optional[str] = None
    email: Optional[str] = None
    insurance: Insurance = Field(default_factory=Insurance)
    signature: Signature = Field(default_factory=Signature)


# Empty shapes, reused whenever a source record is absent
EMPTY_PERMIT_CASE = PermitCaseSection()
EMPTY_AUTHORITY = AuthoritySection()
EMPTY_JOB = JobSection()
EMPTY_OWNER_CONTACT = OwnerContact()
EMPTY_PARCEL = ParcelSection()
EMPTY_MEASUREMENTS = MeasurementsSection()
EMPTY_ESTIMATE = EstimateSection()
EMPTY_PRODUCT = ProductInfo()
EMPTY_PRODUCTS = ProductsSection()
EMPTY_COMPANY = CompanySection()


class CanonicalContext(_Section):
    """Template-independent snapshot of all data for one permit case."""

    meta: ContextMeta
    permit_case: PermitCaseSection = EMPTY_PERMIT_CASE
    authority: AuthoritySection = EMPTY_AUTHORITY
    job: JobSection = EMPTY_JOB
    owner_contact: OwnerContact = EMPTY_OWNER_CONTACT
    parcel: ParcelSection = EMPTY_PARCEL
    measurements: MeasurementsSection = EMPTY_MEASUREMENTS
    estimate: EstimateSection = EMPTY_ESTIMATE
    products: ProductsSection = EMPTY_PRODUCTS
    company: CompanySection = EMPTY_COMPANY

    def as_lookup(self) -> Dict[str, Any]:
        """Plain-dict view used for path lookups and expression evaluation."""
        return self.model_dump(mode="json")
