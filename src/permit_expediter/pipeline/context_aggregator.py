"""
Context Aggregator - builds the canonical permit context for one case.

Fetches every record needed to fill a permit application, normalizes it into
:class:`CanonicalContext` and runs the missing-item checklist over it.

Fetch phases (independent fetches inside a phase run concurrently):
1. job, permit case, tenant         (all required)
2. authority, owner contact, measurements, estimate
3. parcel cache (needs the county), products + approval documents (need the estimate)

``meta.sources_used`` is always reported in the canonical order
:data:`SOURCE_ORDER`, regardless of completion order.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Dict, List, Optional, Tuple

from permit_expediter.config.settings import PermitBuilderSettings
from permit_expediter.errors import NotFoundError, StoreTimeoutError
from permit_expediter.pipeline.missing_items import detect
from permit_expediter.schemas.build import BuildOptions
from permit_expediter.schemas.context import (
    EMPTY_AUTHORITY,
    EMPTY_ESTIMATE,
    EMPTY_MEASUREMENTS,
    EMPTY_OWNER_CONTACT,
    EMPTY_PARCEL,
    EMPTY_PRODUCT,
    EMPTY_PRODUCTS,
    Address,
    ApprovalDocument,
    AuthoritySection,
    CanonicalContext,
    CompanyAddress,
    CompanySection,
    ContextMeta,
    EstimateSection,
    GeoPoint,
    Insurance,
    JobSection,
    MeasurementsSection,
    OwnerContact,
    ParcelSection,
    PermitCaseSection,
    ProductInfo,
    ProductsSection,
    RoofSystem,
    Signature,
    StorageRef,
)
from permit_expediter.schemas.findings import MissingItem
from permit_expediter.schemas.permit_case import utc_now_iso
from permit_expediter.storage.protocol import PermitStore

logger = logging.getLogger(__name__)

SOURCE_ORDER = (
    "jobs",
    "permitting_authorities",
    "permit_cases",
    "contacts",
    "permit_job_measurements",
    "property_parcel_cache",
    "estimates",
    "products",
    "product_approval_documents",
    "tenants",
)

# Trust ranking, not recency: the most recent row only wins within a source
MEASUREMENT_SOURCE_PRIORITY = {"ROOFR": 0, "EAGLEVIEW": 1, "MANUAL": 2}

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)

STALE_PARCEL_WARNING = "Parcel data is stale - consider refreshing"

Row = Dict[str, Any]


@dataclass
class AggregationResult:
    context: CanonicalContext
    missing: List[MissingItem] = field(default_factory=list)
    authority_detected: bool = False


# =============================================================================
# NORMALIZATION HELPERS
# =============================================================================


def _clean(value: Any) -> Optional[str]:
    """Strip strings; blank strings become None."""
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def compose_address(
    street: Optional[str],
    city: Optional[str],
    state: Optional[str],
    zip_code: Optional[str],
) -> Optional[str]:
    """Join address parts as "street, city, state zip", skipping blanks."""
    locality = " ".join(p for p in (_clean(state), _clean(zip_code)) if p)
    parts = [p for p in (_clean(street), _clean(city), locality) if p]
    return ", ".join(parts) or None


def split_owner_name(name: Optional[str]) -> Tuple[Optional[str], Optional[str]]:
    """Split an owner name into (first, last).

    Parcel records use "LAST, FIRST"; contacts use "First Last".
    """
    name = _clean(name)
    if not name:
        return None, None
    if "," in name:
        last, _, first = name.partition(",")
        return _clean(first), _clean(last)
    parts = name.split()
    if len(parts) == 1:
        return parts[0], None
    return parts[0], " ".join(parts[1:])


def _parse_timestamp(value: Any) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def is_stale(fetched_at: Any, ttl_days: int, now: Optional[datetime] = None) -> bool:
    """True when ``fetched_at`` is missing, unparseable, or older than the TTL."""
    fetched = _parse_timestamp(fetched_at)
    if fetched is None:
        return True
    now = now or datetime.now(timezone.utc)
    return now - fetched > timedelta(days=ttl_days)


def _norm_place(value: Any) -> Optional[str]:
    text = _clean(value)
    if not text:
        return None
    text = text.casefold()
    if text.endswith(" county"):
        text = text[: -len(" county")].strip()
    return text


def _measured_key(row: Row) -> Tuple[bool, datetime]:
    # Missing or unparseable timestamps sort before any real one
    measured = _parse_timestamp(row.get("measured_at"))
    return measured is not None, measured or _EPOCH


def select_measurement(rows: List[Row]) -> Optional[Row]:
    """Pick the best measurement row.

    ROOFR beats EAGLEVIEW beats MANUAL regardless of timestamps; the newest
    row wins within a source. Without any of those sources the most recently
    measured row is used.
    """
    if not rows:
        return None
    trusted = [r for r in rows if r.get("source") in MEASUREMENT_SOURCE_PRIORITY]
    pool = trusted or rows
    best_rank = min((MEASUREMENT_SOURCE_PRIORITY.get(r.get("source"), 99) for r in pool))
    candidates = [r for r in pool if MEASUREMENT_SOURCE_PRIORITY.get(r.get("source"), 99) == best_rank]
    return max(candidates, key=_measured_key)


# =============================================================================
# AGGREGATOR
# =============================================================================


class ContextAggregator:
    """Builds a :class:`CanonicalContext` from the permit store.

    Args:
        store: Data store used for every fetch.
        settings: Defaults for state, parcel TTL and store timeouts.
    """

    def __init__(self, store: PermitStore, settings: Optional[PermitBuilderSettings] = None):
        self.store = store
        self.settings = settings or PermitBuilderSettings()

    async def _call(self, awaitable: Awaitable[Any], what: str) -> Any:
        """Await a store call under the configured timeout."""
        timeout = self.settings.store_timeout_seconds
        try:
            return await asyncio.wait_for(awaitable, timeout=timeout)
        except asyncio.TimeoutError as e:
            raise StoreTimeoutError(
                f"Timed out fetching {what}",
                {"source": what, "timeout_seconds": timeout},
            ) from e

    async def _get_owned(self, table: str, row_id: Optional[str], tenant_id: str) -> Optional[Row]:
        """Fetch a row by id, treating rows of other tenants as absent."""
        if not row_id:
            return None
        row = await self._call(self.store.get(table, row_id), table)
        if row is None or row.get("tenant_id") != tenant_id:
            return None
        return row

    # -------------------------------------------------------------------------
    # Fetchers
    # -------------------------------------------------------------------------

    async def _fetch_required(self, tenant_id: str, permit_case_id: str, job_id: str):
        job, case, tenant = await asyncio.gather(
            self._get_owned("jobs", job_id, tenant_id),
            self._get_owned("permit_cases", permit_case_id, tenant_id),
            self._call(self.store.get("tenants", tenant_id), "tenants"),
        )
        if job is None:
            raise NotFoundError("job", job_id)
        if case is None:
            raise NotFoundError("permit_case", permit_case_id)
        if tenant is None:
            raise NotFoundError("tenant", tenant_id)
        return job, case, tenant

    async def _fetch_authority(
        self,
        tenant_id: str,
        authority_id: Optional[str],
        job: Row,
        case: Row,
        options: BuildOptions,
    ) -> Tuple[Optional[Row], bool]:
        if authority_id:
            return await self._get_owned("permitting_authorities", authority_id, tenant_id), False
        if not options.auto_detect_jurisdiction:
            return None, False
        detected = await self.detect_authority(tenant_id, job, case)
        return detected, detected is not None

    async def detect_authority(self, tenant_id: str, job: Row, case: Row) -> Optional[Row]:
        """Match the job location against active authorities.

        A CITY authority matching state + city wins over a COUNTY authority
        matching state + county.
        """
        state = _clean(job.get("address_state")) or _clean(case.get("state")) or self.settings.default_state
        city = _norm_place(job.get("address_city") or case.get("city_name"))
        county = _norm_place(case.get("county_name") or job.get("address_county"))

        rows = await self._call(
            self.store.find("permitting_authorities", {"tenant_id": tenant_id}),
            "permitting_authorities",
        )
        candidates = [
            r
            for r in rows
            if r.get("is_active", True) and (_clean(r.get("state")) or "").upper() == state.upper()
        ]

        if city:
            for row in candidates:
                if row.get("jurisdiction_type") == "CITY" and _norm_place(row.get("city_name")) == city:
                    logger.info(f"Detected city authority {row.get('id')} for {city}, {state}")
                    return row
        if county:
            for row in candidates:
                if row.get("jurisdiction_type") == "COUNTY" and _norm_place(row.get("county_name")) == county:
                    logger.info(f"Detected county authority {row.get('id')} for {county}, {state}")
                    return row

        logger.info(f"No permitting authority matches job {job.get('id')} ({city}, {county}, {state})")
        return None

    async def _fetch_measurement(self, tenant_id: str, job_id: str) -> Optional[Row]:
        rows = await self._call(
            self.store.find("permit_job_measurements", {"tenant_id": tenant_id, "job_id": job_id}),
            "permit_job_measurements",
        )
        return select_measurement(rows)

    async def _fetch_estimate(self, tenant_id: str, estimate_id: Optional[str]) -> Optional[Row]:
        if not estimate_id:
            return None
        row = await self._get_owned("estimates", estimate_id, tenant_id)
        if row is None:
            raise NotFoundError("estimate", estimate_id)
        return row

    async def _fetch_parcel(self, tenant_id: str, job_id: str, county: Optional[str]) -> Optional[Row]:
        if not county:
            return None
        rows = await self._call(
            self.store.find(
                "property_parcel_cache",
                {"tenant_id": tenant_id, "job_id": job_id, "county_name": county},
                order_by="fetched_at",
                descending=True,
                limit=1,
            ),
            "property_parcel_cache",
        )
        return rows[0] if rows else None

    async def _fetch_products(
        self, tenant_id: str, estimate: Optional[Row], options: BuildOptions
    ) -> Tuple[Optional[Row], List[Row], List[Row]]:
        if estimate is None:
            return None, [], []

        component_ids = [cid for cid in (estimate.get("component_product_ids") or []) if cid]
        fetched = await asyncio.gather(
            self._get_owned("products", estimate.get("primary_product_id"), tenant_id),
            *(self._get_owned("products", cid, tenant_id) for cid in component_ids),
        )
        primary = fetched[0]
        components = [c for c in fetched[1:] if c is not None]

        approvals: List[Row] = []
        product_ids = [p["id"] for p in [primary, *components] if p is not None]
        if options.auto_link_approvals and product_ids:
            approvals = await self._call(
                self.store.find(
                    "product_approval_documents",
                    {"tenant_id": tenant_id, "product_id": product_ids},
                ),
                "product_approval_documents",
            )
        return primary, components, approvals

    # -------------------------------------------------------------------------
    # Build
    # -------------------------------------------------------------------------

    async def build(
        self,
        tenant_id: str,
        permit_case_id: str,
        job_id: str,
        estimate_id: Optional[str] = None,
        options: Optional[BuildOptions] = None,
        authority_id: Optional[str] = None,
    ) -> AggregationResult:
        """Build the canonical context for a permit case.

        Args:
            tenant_id: Owning tenant; rows of other tenants are invisible.
            permit_case_id: Case being built.
            job_id: Job the case belongs to.
            estimate_id: Selected estimate, if any.
            options: Build options (jurisdiction detection, parcel TTL, approvals).
            authority_id: Authority already assigned to the case, if any.

        Raises:
            NotFoundError: If the job, case, tenant or a requested estimate is absent.
            StoreTimeoutError: If a store call exceeds the configured timeout.
        """
        options = options or BuildOptions()
        warnings: List[str] = []

        job, case, tenant = await self._fetch_required(tenant_id, permit_case_id, job_id)

        (authority, detected), contact, measurement, estimate = await asyncio.gather(
            self._fetch_authority(tenant_id, authority_id or case.get("authority_id"), job, case, options),
            self._get_owned("contacts", job.get("contact_id"), tenant_id),
            self._fetch_measurement(tenant_id, job_id),
            self._fetch_estimate(tenant_id, estimate_id),
        )

        county = (
            _clean(case.get("county_name"))
            or _clean((authority or {}).get("county_name"))
            or _clean(job.get("address_county"))
        )
        parcel, (primary, components, approvals) = await asyncio.gather(
            self._fetch_parcel(tenant_id, job_id, county),
            self._fetch_products(tenant_id, estimate, options),
        )

        ttl_days = (
            options.parcel_cache_ttl_days
            if options.parcel_cache_ttl_days is not None
            else self.settings.parcel_cache_ttl_days
        )
        parcel_section = self._parcel_section(parcel, county, ttl_days)
        if parcel_section.is_stale:
            warnings.append(STALE_PARCEL_WARNING)

        found = {
            "jobs": True,
            "permitting_authorities": authority is not None,
            "permit_cases": True,
            "contacts": contact is not None,
            "permit_job_measurements": measurement is not None,
            "property_parcel_cache": parcel is not None,
            "estimates": estimate is not None,
            "products": primary is not None or bool(components),
            "product_approval_documents": bool(approvals),
            "tenants": True,
        }
        sources_used = tuple(name for name in SOURCE_ORDER if found[name])

        measurements_section = self._measurements_section(measurement)
        context = CanonicalContext(
            meta=ContextMeta(
                tenant_id=tenant_id,
                permit_case_id=permit_case_id,
                job_id=job_id,
                estimate_id=estimate_id,
                built_at=utc_now_iso(),
                sources_used=sources_used,
                warnings=tuple(warnings),
            ),
            permit_case=self._permit_case_section(case),
            authority=self._authority_section(authority),
            job=self._job_section(job, contact, case, parcel_section, measurements_section),
            owner_contact=self._owner_section(contact, parcel_section),
            parcel=parcel_section,
            measurements=measurements_section,
            estimate=self._estimate_section(estimate),
            products=self._products_section(primary, components, approvals),
            company=self._company_section(tenant),
        )

        missing = detect(context)
        logger.info(
            f"Built context for case {permit_case_id}: sources={list(sources_used)}, "
            f"missing={len(missing)}, warnings={len(warnings)}"
        )
        return AggregationResult(context=context, missing=missing, authority_detected=detected)

    # -------------------------------------------------------------------------
    # Section builders
    # -------------------------------------------------------------------------

    def _permit_case_section(self, case: Row) -> PermitCaseSection:
        return PermitCaseSection(
            id=case.get("id"),
            status=case.get("status"),
            jurisdiction_type=case.get("jurisdiction_type"),
            state=_clean(case.get("state")) or self.settings.default_state,
            county_name=_clean(case.get("county_name")),
            city_name=_clean(case.get("city_name")),
        )

    def _authority_section(self, row: Optional[Row]) -> AuthoritySection:
        if row is None:
            return EMPTY_AUTHORITY
        return AuthoritySection(
            id=row.get("id"),
            jurisdiction_type=row.get("jurisdiction_type"),
            state=row.get("state"),
            county_name=row.get("county_name"),
            city_name=row.get("city_name"),
            portal_type=row.get("portal_type"),
            portal_url=row.get("portal_url"),
            application_modes=tuple(row.get("application_modes") or ()),
            default_required_attachments=tuple(row.get("default_required_attachments") or ()),
            contact_email=row.get("contact_email"),
            contact_phone=row.get("contact_phone"),
            notes=row.get("notes"),
        )

    def _job_section(
        self,
        job: Row,
        contact: Optional[Row],
        case: Row,
        parcel: ParcelSection,
        measurements: MeasurementsSection,
    ) -> JobSection:
        prefix = "address_"
        keys = ("street", "line2", "city", "state", "zip")
        source = job
        if not any(_clean(job.get(prefix + k)) for k in keys) and contact is not None:
            source = contact

        street = _clean(source.get("address_street"))
        city = _clean(source.get("address_city"))
        state = _clean(source.get("address_state"))
        zip_code = _clean(source.get("address_zip"))
        full = _clean(job.get("address_full")) or compose_address(street, city, state, zip_code)

        lat = job.get("latitude")
        lng = job.get("longitude")
        if (lat is None or lng is None) and contact is not None:
            lat, lng = contact.get("latitude"), contact.get("longitude")

        return JobSection(
            id=job.get("id"),
            job_number=job.get("job_number"),
            status=job.get("status"),
            contact_id=job.get("contact_id"),
            address=Address(
                line1=street,
                line2=_clean(source.get("address_line2")),
                city=city,
                state=state,
                zip=zip_code,
                county=_clean(job.get("address_county")) or _clean(case.get("county_name")),
                full=full,
            ),
            geo=GeoPoint(lat=lat, lng=lng),
            year_built=job.get("year_built") or parcel.year_built,
            stories=job.get("stories") or measurements.stories,
            structure_type=job.get("structure_type"),
            roof_deck_type=job.get("roof_deck_type"),
            notes=job.get("notes"),
        )

    def _owner_section(self, contact: Optional[Row], parcel: ParcelSection) -> OwnerContact:
        if contact is None and not parcel.owner_name:
            return EMPTY_OWNER_CONTACT
        contact = contact or {}

        contact_name = _clean(contact.get("full_name")) or _clean(
            f"{contact.get('first_name') or ''} {contact.get('last_name') or ''}"
        )
        if _clean(parcel.owner_name):
            full_name = _clean(parcel.owner_name)
            first, last = split_owner_name(full_name)
        else:
            full_name = contact_name
            first = _clean(contact.get("first_name"))
            last = _clean(contact.get("last_name"))
            if not (first or last):
                first, last = split_owner_name(full_name)

        def part(name: str) -> Optional[str]:
            return _clean(contact.get(f"mailing_{name}")) or _clean(contact.get(f"address_{name}"))

        street, city, state, zip_code = part("street"), part("city"), part("state"), part("zip")
        full = compose_address(street, city, state, zip_code) or _clean(parcel.owner_mailing_address)

        return OwnerContact(
            contact_id=contact.get("id"),
            full_name=full_name,
            first_name=first,
            last_name=last,
            phone=_clean(contact.get("phone")),
            email=_clean(contact.get("email")),
            mailing_address=Address(
                line1=street,
                line2=part("line2"),
                city=city,
                state=state,
                zip=zip_code,
                full=full,
            ),
        )

    def _parcel_section(self, row: Optional[Row], county: Optional[str], ttl_days: int) -> ParcelSection:
        if row is None:
            return ParcelSection(county_name=county) if county else EMPTY_PARCEL
        return ParcelSection(
            county_name=row.get("county_name") or county,
            parcel_id=row.get("parcel_id"),
            folio=row.get("folio"),
            owner_name=row.get("owner_name"),
            owner_mailing_address=row.get("owner_mailing_address"),
            situs_address=row.get("situs_address"),
            legal_description=row.get("legal_description"),
            subdivision=row.get("subdivision"),
            land_use=row.get("land_use"),
            year_built=row.get("year_built"),
            assessed_value=row.get("assessed_value"),
            source_name=row.get("source_name"),
            source_url=row.get("source_url"),
            fetched_at=row.get("fetched_at"),
            is_stale=is_stale(row.get("fetched_at"), ttl_days),
        )

    def _measurements_section(self, row: Optional[Row]) -> MeasurementsSection:
        if row is None:
            return EMPTY_MEASUREMENTS
        return MeasurementsSection(
            id=row.get("id"),
            source=row.get("source"),
            measured_at=row.get("measured_at"),
            total_roof_area_sqft=row.get("total_roof_area_sqft"),
            predominant_pitch=row.get("predominant_pitch"),
            squares=row.get("squares"),
            stories=row.get("stories"),
            eaves_ft=row.get("eaves_ft"),
            rakes_ft=row.get("rakes_ft"),
            ridges_ft=row.get("ridges_ft"),
            valleys_ft=row.get("valleys_ft"),
            hips_ft=row.get("hips_ft"),
            report=StorageRef(bucket=row.get("report_bucket"), path=row.get("report_path")),
        )

    def _estimate_section(self, row: Optional[Row]) -> EstimateSection:
        if row is None:
            return EMPTY_ESTIMATE
        total = row.get("total")
        return EstimateSection(
            id=row.get("id"),
            contract_total=total if total is not None else row.get("grand_total"),
            scope=row.get("scope"),
            permit_type=row.get("permit_type"),
            primary_roof_system=RoofSystem(
                category=row.get("primary_roof_category"),
                display_name=row.get("primary_roof_display_name"),
            ),
        )

    @staticmethod
    def _product_info(row: Optional[Row]) -> ProductInfo:
        if row is None:
            return EMPTY_PRODUCT
        return ProductInfo(
            product_id=row.get("id"),
            name=row.get("name"),
            category=row.get("category"),
            manufacturer=row.get("manufacturer"),
            model=row.get("model"),
            fl_product_approval_no=row.get("fl_product_approval_no"),
            miami_dade_noa_no=row.get("miami_dade_noa_no"),
            approval_expires_on=row.get("approval_expires_on"),
            hvhz_approved=bool(row.get("hvhz_approved")),
            extracted_fields=row.get("extracted_fields") or {},
        )

    def _products_section(
        self, primary: Optional[Row], components: List[Row], approvals: List[Row]
    ) -> ProductsSection:
        if primary is None and not components:
            return EMPTY_PRODUCTS
        return ProductsSection(
            primary=self._product_info(primary),
            components=tuple(self._product_info(c) for c in components),
            approval_documents=tuple(
                ApprovalDocument(
                    id=a.get("id"),
                    product_id=a.get("product_id"),
                    approval_kind=a.get("approval_kind"),
                    approval_number=a.get("approval_number"),
                    revision=a.get("revision"),
                    expires_on=a.get("expires_on"),
                    storage_bucket=a.get("storage_bucket"),
                    storage_path=a.get("storage_path"),
                )
                for a in approvals
            ),
        )

    def _company_section(self, tenant: Row) -> CompanySection:
        return CompanySection(
            tenant_id=tenant.get("id"),
            legal_name=_clean(tenant.get("legal_name") or tenant.get("company_name")),
            dba_name=_clean(tenant.get("dba_name")),
            license_number=_clean(tenant.get("license_number")),
            address=CompanyAddress(full=_clean(tenant.get("address_full"))),
            phone=_clean(tenant.get("phone")),
            email=_clean(tenant.get("email")),
            insurance=Insurance(certificate_doc_id=_clean(tenant.get("insurance_certificate_doc_id"))),
            signature=Signature(
                signer_name=_clean(tenant.get("signer_name")),
                title=_clean(tenant.get("signer_title")),
            ),
        )
