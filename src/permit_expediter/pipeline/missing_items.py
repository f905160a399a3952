"""
Missing-Item Engine - template-independent completeness checks.

``detect`` runs a fixed checklist against the canonical context.
``template_missing_items`` adds what a specific template needs beyond that
(the template itself, required sources, required attachments).
``merge`` combines lists with first-wins deduplication by key.
"""

from typing import Callable, Dict, Iterable, List, Optional, Tuple

from permit_expediter.schemas.context import CanonicalContext
from permit_expediter.schemas.findings import MissingItem, Severity
from permit_expediter.schemas.template import PermitTemplate

MISSING_PREFIX = "missing."

# Template required_sources entry -> source name recorded in meta.sources_used
REQUIRED_SOURCE_TABLES: Dict[str, str] = {
    "job": "jobs",
    "contact_owner": "contacts",
    "measurements": "permit_job_measurements",
    "property_parcel_cache": "property_parcel_cache",
    "estimate": "estimates",
    "products": "products",
}


def _blank(value) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return value.strip() == ""
    return False


def _owner_name(ctx: CanonicalContext) -> Optional[str]:
    if not _blank(ctx.parcel.owner_name):
        return ctx.parcel.owner_name
    return ctx.owner_contact.full_name


# (key suffix, severity, message, predicate returning True when missing)
CHECKLIST: List[Tuple[str, Severity, str, Callable[[CanonicalContext], bool]]] = [
    (
        "job_address",
        Severity.ERROR,
        "Job address is missing.",
        lambda c: _blank(c.job.address.full),
    ),
    (
        "job_geo",
        Severity.WARNING,
        "Property coordinates missing for accurate jurisdiction detection.",
        lambda c: c.job.geo.lat is None or c.job.geo.lng is None,
    ),
    (
        "authority_not_configured",
        Severity.ERROR,
        "No permitting authority configured for this jurisdiction.",
        lambda c: c.authority.id is None,
    ),
    (
        "owner_name",
        Severity.ERROR,
        "Owner name not found.",
        lambda c: _blank(_owner_name(c)),
    ),
    (
        "owner_mailing_address",
        Severity.WARNING,
        "Owner mailing address not found.",
        lambda c: _blank(c.owner_contact.mailing_address.full),
    ),
    (
        "parcel_legal_description",
        Severity.WARNING,
        "Legal description not found in property data.",
        lambda c: _blank(c.parcel.legal_description),
    ),
    (
        "parcel_id",
        Severity.WARNING,
        "Parcel ID not found.",
        lambda c: _blank(c.parcel.parcel_id) and _blank(c.parcel.folio),
    ),
    (
        "measurements_total_roof_area",
        Severity.ERROR,
        "Total roof area measurement is required.",
        lambda c: not c.measurements.total_roof_area_sqft,
    ),
    (
        "measurements_report",
        Severity.WARNING,
        "Measurement report file not linked.",
        lambda c: _blank(c.measurements.report.path),
    ),
    (
        "estimate_selected",
        Severity.WARNING,
        "No estimate selected for permit build.",
        lambda c: c.estimate.id is None,
    ),
    (
        "product_mapping_primary",
        Severity.ERROR,
        "Primary roof system not mapped to product library.",
        lambda c: c.products.primary.product_id is None,
    ),
    (
        "company_license",
        Severity.WARNING,
        "Company license number not configured.",
        lambda c: _blank(c.company.license_number),
    ),
    (
        "company_insurance",
        Severity.WARNING,
        "Company insurance certificate not uploaded.",
        lambda c: _blank(c.company.insurance.certificate_doc_id),
    ),
]


def detect(context: CanonicalContext) -> List[MissingItem]:
    """Run the fixed completeness checklist against a context."""
    return [
        MissingItem(key=f"{MISSING_PREFIX}{suffix}", severity=severity, message=message)
        for suffix, severity, message, is_missing in CHECKLIST
        if is_missing(context)
    ]


def _has_product_approval(ctx: CanonicalContext) -> bool:
    primary = ctx.products.primary
    return bool(
        ctx.products.approval_documents
        or not _blank(primary.fl_product_approval_no)
        or not _blank(primary.miami_dade_noa_no)
    )


# Attachment key -> (satisfied predicate, message)
ATTACHMENT_CHECKS: Dict[str, Tuple[Callable[[CanonicalContext], bool], str]] = {
    "MEASUREMENT_REPORT": (
        lambda c: not _blank(c.measurements.report.path),
        "Template requires a measurement report attachment.",
    ),
    "PRODUCT_APPROVAL": (
        _has_product_approval,
        "Template requires a product approval document.",
    ),
    "INSURANCE_CERTIFICATE": (
        lambda c: not _blank(c.company.insurance.certificate_doc_id),
        "Template requires the company insurance certificate.",
    ),
}


def template_missing_items(
    template: Optional[PermitTemplate],
    context: CanonicalContext,
    parse_error: Optional[str] = None,
) -> List[MissingItem]:
    """Missing items contributed by the selected template.

    Args:
        template: Active parsed template, or None if none is usable.
        context: Canonical context for the case.
        parse_error: Message from a failed template parse, if any.
    """
    if template is None:
        message = (
            f"Permit application template is invalid: {parse_error}"
            if parse_error
            else "No active permit application template for this authority and permit type."
        )
        return [MissingItem(key=f"{MISSING_PREFIX}template", severity=Severity.ERROR, message=message)]

    items: List[MissingItem] = []
    sources_used = set(context.meta.sources_used)
    required = template.document.required_sources

    for name, table in REQUIRED_SOURCE_TABLES.items():
        if not getattr(required, name):
            continue
        if table not in sources_used:
            items.append(
                MissingItem(
                    key=f"{MISSING_PREFIX}source.{name}",
                    severity=Severity.ERROR,
                    message=f"Template requires data from {table}, but none was found.",
                )
            )

    for attachment in template.document.attachments.required:
        check = ATTACHMENT_CHECKS.get(attachment)
        key = f"{MISSING_PREFIX}attachment.{attachment}"
        if check is None:
            items.append(
                MissingItem(
                    key=key,
                    severity=Severity.INFO,
                    message=f"Remember to attach {attachment.replace('_', ' ').lower()}.",
                )
            )
            continue
        is_satisfied, message = check
        if not is_satisfied(context):
            items.append(MissingItem(key=key, severity=Severity.ERROR, message=message))

    return items


def merge(*lists: Iterable[MissingItem]) -> List[MissingItem]:
    """Concatenate lists and drop repeated keys, keeping the first occurrence."""
    seen = set()
    merged: List[MissingItem] = []
    for items in lists:
        for item in items:
            if item.key in seen:
                continue
            seen.add(item.key)
            merged.append(item)
    return merged
