"""
Permit Build Orchestrator - sequences one permit case build end to end.

Pipeline:
1. Obtain or create the permit case (conditional insert unless force_rebuild)
2. Aggregate the canonical context
3. Select and parse the active template
4. Resolve fields, then validate
5. Merge context and template missing items
6. Compute status (WAITING_ON_DOCS on any error-severity finding, else DRAFT_BUILT)
7. Persist the case summary and audit events (skipped on dry_run)
8. Generate documents (skipped on dry_run); failures are recorded, never fatal
9. Compose the result with next actions and a context preview

Status is recomputed from current findings on every rebuild, so a case can
move back from DRAFT_BUILT to WAITING_ON_DOCS.
"""

import asyncio
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Awaitable, Dict, List, Optional, Sequence, Tuple

from permit_expediter.config.settings import PermitBuilderSettings
from permit_expediter.documents.renderer import (
    DocumentRenderer,
    HtmlDocumentRenderer,
    RenderedDocument,
    render_packet_manifest,
)
from permit_expediter.errors import (
    InvalidRequestError,
    NotFoundError,
    PermitBuildError,
    PersistenceError,
    StoreTimeoutError,
    TemplateParseError,
)
from permit_expediter.pipeline.context_aggregator import ContextAggregator
from permit_expediter.pipeline.missing_items import merge, template_missing_items
from permit_expediter.runtime.resolver import ResolvedTemplate, resolve
from permit_expediter.runtime.validator import validate
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
from permit_expediter.schemas.findings import Finding, MissingItem, Severity, ValidationError
from permit_expediter.schemas.permit_case import (
    PermitCase,
    PermitCaseEvent,
    PermitCaseStatus,
    PermitDocKind,
    PermitDocument,
    PermitEventType,
    utc_now_iso,
)
from permit_expediter.schemas.template import PermitTemplate, parse_template
from permit_expediter.storage.protocol import ObjectStorage, PermitStore

logger = logging.getLogger(__name__)

PORTAL_ACTION_STATUSES = [
    PermitCaseStatus.DRAFT_BUILT.value,
    PermitCaseStatus.READY_TO_SUBMIT.value,
    PermitCaseStatus.SUBMITTED.value,
]


# =============================================================================
# PURE HELPERS
# =============================================================================


def compute_status(
    missing_items: Sequence[Finding], validation_errors: Sequence[Finding]
) -> PermitCaseStatus:
    """WAITING_ON_DOCS if any error-severity finding exists, else DRAFT_BUILT."""
    for finding in [*missing_items, *validation_errors]:
        if finding.severity == Severity.ERROR.value:
            return PermitCaseStatus.WAITING_ON_DOCS
    return PermitCaseStatus.DRAFT_BUILT


def calc_findings(template: Optional[PermitTemplate], resolved: ResolvedTemplate) -> List[ValidationError]:
    """Turn calc failures into ``calc.<key>`` warnings."""
    labels = {f.key: f.display_name for f in template.fields} if template else {}
    return [
        ValidationError(
            key=f"calc.{err.field_key}",
            severity=Severity.WARNING,
            message=f"Could not calculate {labels.get(err.field_key, err.field_key)}: {err.message}",
        )
        for err in resolved.calc_errors
    ]


def build_next_actions(
    context: CanonicalContext,
    missing_items: Sequence[MissingItem],
    validation_errors: Sequence[ValidationError],
) -> List[NextAction]:
    actions: List[NextAction] = []

    if context.authority.portal_url:
        actions.append(
            NextAction(
                action="OPEN_PERMITTING_PORTAL",
                label="Open Portal",
                url=context.authority.portal_url,
                when={"status_in": PORTAL_ACTION_STATUSES},
            )
        )

    error_keys = [
        f.key for f in [*missing_items, *validation_errors] if f.severity == Severity.ERROR.value
    ]
    if error_keys:
        actions.append(
            NextAction(action="FIX_MISSING_ITEMS", label="Resolve missing items", items=error_keys)
        )
    return actions


def build_context_preview(context: CanonicalContext) -> Dict[str, Any]:
    """Small projection of the context for UI summaries."""
    authority = context.authority
    return {
        "authority": (
            {
                "county_name": authority.county_name,
                "city_name": authority.city_name,
                "portal_type": authority.portal_type,
            }
            if authority.id
            else None
        ),
        "measurements": {
            "total_roof_area_sqft": context.measurements.total_roof_area_sqft,
            "predominant_pitch": context.measurements.predominant_pitch,
        },
        "products": {
            "primary": {
                "manufacturer": context.products.primary.manufacturer,
                "model": context.products.primary.model,
            }
        },
    }


def versioned_doc_path(tenant_id: str, permit_case_id: str, filename: str) -> str:
    """``{tenant}/{case}/{timestamp}_{filename}``; every generation gets a new path."""
    stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%fZ")
    return f"{tenant_id}/{permit_case_id}/{stamp}_{filename}"


# =============================================================================
# ORCHESTRATOR
# =============================================================================


class PermitBuildOrchestrator:
    """Builds permit cases against a data store and object storage.

    Args:
        store: Data store for entities, cases, events and document rows.
        object_storage: Blob storage for generated documents.
        renderer: Document renderer (HTML by default).
        settings: Runtime settings.
    """

    def __init__(
        self,
        store: PermitStore,
        object_storage: ObjectStorage,
        renderer: Optional[DocumentRenderer] = None,
        settings: Optional[PermitBuilderSettings] = None,
    ):
        self.store = store
        self.object_storage = object_storage
        self.renderer = renderer or HtmlDocumentRenderer()
        self.settings = settings or PermitBuilderSettings()
        self.aggregator = ContextAggregator(store, self.settings)

    async def _store_call(self, awaitable: Awaitable[Any], what: str) -> Any:
        timeout = self.settings.store_timeout_seconds
        try:
            return await asyncio.wait_for(awaitable, timeout=timeout)
        except asyncio.TimeoutError as e:
            raise StoreTimeoutError(
                f"Timed out during {what}", {"operation": what, "timeout_seconds": timeout}
            ) from e

    async def _required_write(self, awaitable: Awaitable[Any], what: str) -> Any:
        """Run a write whose failure aborts the build."""
        try:
            return await self._store_call(awaitable, what)
        except PermitBuildError:
            raise
        except Exception as e:
            raise PersistenceError(f"Failed to {what}: {e}", {"operation": what}) from e

    # -------------------------------------------------------------------------
    # Case lifecycle
    # -------------------------------------------------------------------------

    async def _check_inputs(self, tenant_id: str, job_id: str, estimate_id: Optional[str]) -> None:
        """Fail before any write when the tenant, job or estimate is absent."""
        if not tenant_id or not tenant_id.strip():
            raise InvalidRequestError("tenant_id is required", {"field": "tenant_id"})
        tenant = await self._store_call(self.store.get("tenants", tenant_id), "tenant lookup")
        if tenant is None:
            raise NotFoundError("tenant", tenant_id)
        job = await self._store_call(self.store.get("jobs", job_id), "job lookup")
        if job is None or job.get("tenant_id") != tenant_id:
            raise NotFoundError("job", job_id)
        if estimate_id:
            estimate = await self._store_call(self.store.get("estimates", estimate_id), "estimate lookup")
            if estimate is None or estimate.get("tenant_id") != tenant_id:
                raise NotFoundError("estimate", estimate_id)

    async def obtain_case(
        self,
        tenant_id: str,
        job_id: str,
        estimate_id: Optional[str],
        force_rebuild: bool,
        user_id: Optional[str] = None,
    ) -> Tuple[Dict[str, Any], bool]:
        """Reuse the newest non-void case or create one.

        Returns:
            (case row, created)
        """
        new_case = PermitCase(
            id=str(uuid.uuid4()),
            tenant_id=tenant_id,
            job_id=job_id,
            estimate_id=estimate_id,
            status=PermitCaseStatus.NOT_STARTED,
            state=self.settings.default_state,
            created_by=user_id,
        ).model_dump()

        if force_rebuild:
            row = await self._required_write(
                self.store.insert("permit_cases", new_case), "insert permit case"
            )
            return row, True
        return await self._required_write(
            self.store.insert_permit_case_if_absent(new_case), "insert permit case"
        )

    async def _emit(
        self,
        tenant_id: str,
        permit_case_id: str,
        event_type: PermitEventType,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        user_id: Optional[str] = None,
    ) -> None:
        """Append an audit event. Failures are logged and ignored."""
        event = PermitCaseEvent(
            tenant_id=tenant_id,
            permit_case_id=permit_case_id,
            event_type=event_type,
            message=message,
            details=details or {},
            created_by=user_id,
        )
        try:
            await self._store_call(
                self.store.insert("permit_case_events", event.model_dump(exclude_none=True)),
                "insert permit case event",
            )
        except Exception as e:
            logger.warning(f"Failed to record {event_type.value} event for case {permit_case_id}: {e}")

    # -------------------------------------------------------------------------
    # Template selection
    # -------------------------------------------------------------------------

    async def select_template(
        self, tenant_id: str, context: CanonicalContext
    ) -> Tuple[Optional[PermitTemplate], Optional[str]]:
        """Load and strictly parse the active template for the case.

        Returns:
            (template, parse_error). Both are None when no template is active.
        """
        authority_id = context.authority.id
        if not authority_id:
            return None, None
        permit_type = context.estimate.permit_type or self.settings.default_permit_type

        rows = await self._store_call(
            self.store.find(
                "permit_application_templates",
                {
                    "tenant_id": tenant_id,
                    "authority_id": authority_id,
                    "permit_type": permit_type,
                    "is_active": True,
                },
                order_by="version",
                descending=True,
                limit=1,
            ),
            "template lookup",
        )
        if not rows:
            logger.info(f"No active {permit_type} template for authority {authority_id}")
            return None, None

        try:
            return parse_template(rows[0]), None
        except TemplateParseError as e:
            logger.warning(f"Template {e.template_id} failed to parse: {e.message}")
            return None, e.message

    # -------------------------------------------------------------------------
    # Documents
    # -------------------------------------------------------------------------

    async def _publish_document(
        self,
        tenant_id: str,
        permit_case_id: str,
        kind: PermitDocKind,
        title: str,
        filename: str,
        rendered: RenderedDocument,
        event_type: PermitEventType,
        user_id: Optional[str],
    ) -> DocumentOutput:
        bucket = self.settings.documents_bucket
        path = versioned_doc_path(tenant_id, permit_case_id, f"{filename}.{rendered.extension}")

        size = await self.object_storage.upload(bucket, path, rendered.data, rendered.content_type)
        signed_url = await self.object_storage.create_signed_url(
            bucket, path, self.settings.signed_url_ttl_seconds
        )
        document = PermitDocument(
            tenant_id=tenant_id,
            permit_case_id=permit_case_id,
            kind=kind,
            title=title,
            storage_bucket=bucket,
            storage_path=path,
            file_size_bytes=size,
            meta={"content_type": rendered.content_type},
            created_by=user_id,
        )
        row = await self._store_call(
            self.store.insert("permit_documents", document.model_dump(exclude_none=True)),
            "insert permit document",
        )
        await self._emit(
            tenant_id,
            permit_case_id,
            event_type,
            f"{title} generated",
            {"bucket": bucket, "path": path},
            user_id,
        )
        return DocumentOutput(
            id=row.get("id"),
            kind=kind.value,
            title=title,
            bucket=bucket,
            path=path,
            signed_url=signed_url,
            content_type=rendered.content_type,
        )

    async def generate_documents(
        self,
        options: BuildOptions,
        context: CanonicalContext,
        template: Optional[PermitTemplate],
        field_values: Dict[str, Any],
        findings: Sequence[Finding],
        user_id: Optional[str] = None,
    ) -> List[DocumentOutput]:
        """Generate the requested documents; each failure is logged and skipped."""
        tenant_id = context.meta.tenant_id
        case_id = context.meta.permit_case_id
        packet = template.document.outputs.packet_zip if template else None

        planned = []
        if options.generate_application_pdf:
            planned.append(
                (
                    PermitDocKind.PERMIT_APPLICATION,
                    "Permit Application",
                    "application",
                    PermitEventType.APPLICATION_GENERATED,
                    lambda: self.renderer.render_application(template, field_values, context),
                )
            )
        if options.generate_packet_zip:
            planned.append(
                (
                    PermitDocKind.PERMIT_PACKET,
                    "Permit Packet (Manifest)",
                    "packet_manifest",
                    PermitEventType.PACKET_GENERATED,
                    lambda: render_packet_manifest(case_id, packet.include if packet else []),
                )
            )
        if options.include_checklist_pdf:
            planned.append(
                (
                    PermitDocKind.CHECKLIST,
                    "Permit Checklist",
                    "checklist",
                    PermitEventType.CHECKLIST_GENERATED,
                    lambda: self.renderer.render_checklist(findings, context),
                )
            )

        documents: List[DocumentOutput] = []
        for kind, title, filename, event_type, render in planned:
            try:
                documents.append(
                    await self._publish_document(
                        tenant_id, case_id, kind, title, filename, render(), event_type, user_id
                    )
                )
            except Exception as e:
                logger.error(f"{title} generation failed for case {case_id}: {e}", exc_info=True)
                await self._emit(
                    tenant_id,
                    case_id,
                    PermitEventType.ERROR,
                    f"{title} generation failed",
                    {"kind": kind.value, "error": str(e), "error_type": type(e).__name__},
                    user_id,
                )
        return documents

    # -------------------------------------------------------------------------
    # Build
    # -------------------------------------------------------------------------

    async def build(
        self, tenant_id: str, request: BuildRequest, user_id: Optional[str] = None
    ) -> BuildResult:
        """Run a full permit build.

        Raises:
            InvalidRequestError: No tenant id.
            NotFoundError: Job, estimate, case or tenant missing.
            PersistenceError: Case insert or summary update failed.
            StoreTimeoutError: A store call timed out.
        """
        options = request.options
        job_id = str(request.job_id)
        estimate_id = str(request.estimate_id) if request.estimate_id else None

        await self._check_inputs(tenant_id, job_id, estimate_id)

        case_row, created = await self.obtain_case(
            tenant_id, job_id, estimate_id, options.force_rebuild, user_id
        )
        case_id = case_row["id"]
        logger.info(f"{'Created' if created else 'Reusing'} permit case {case_id} for job {job_id}")
        if created and not options.dry_run:
            await self._emit(
                tenant_id,
                case_id,
                PermitEventType.CREATED,
                "Permit case created",
                {"job_id": job_id, "estimate_id": estimate_id},
                user_id,
            )

        aggregation = await self.aggregator.build(
            tenant_id,
            case_id,
            job_id,
            estimate_id,
            options,
            authority_id=case_row.get("authority_id"),
        )
        context = aggregation.context

        template, parse_error = await self.select_template(tenant_id, context)

        resolved = resolve(template, context)
        outcome = validate(template, context, resolved)
        validation_errors = [*outcome.errors, *calc_findings(template, resolved)]

        missing_items = merge(
            aggregation.missing, template_missing_items(template, context, parse_error)
        )
        status = compute_status(missing_items, validation_errors)
        jurisdiction = self._jurisdiction(context)

        if not options.dry_run:
            await self._persist_summary(
                case_id,
                context,
                template,
                resolved,
                missing_items,
                validation_errors,
                status,
                jurisdiction,
            )
            await self._emit_build_events(
                tenant_id,
                case_id,
                aggregation.authority_detected,
                context,
                template,
                resolved,
                status,
                user_id,
            )

        documents: List[DocumentOutput] = []
        if not options.dry_run:
            documents = await self.generate_documents(
                options,
                context,
                template,
                resolved.field_values,
                [*missing_items, *validation_errors],
                user_id,
            )

        logger.info(
            f"Permit case {case_id} built: status={status.value}, missing={len(missing_items)}, "
            f"validation_errors={len(validation_errors)}, documents={len(documents)}"
        )
        return BuildResult(
            permit_case=PermitCaseSummary(
                id=case_id,
                status=status.value,
                job_id=job_id,
                estimate_id=estimate_id,
                authority_id=context.authority.id,
                template_id=template.id if template else None,
                jurisdiction=jurisdiction,
            ),
            missing_items=missing_items,
            validation_errors=validation_errors,
            application_field_values=resolved.field_values,
            calculation_results=resolved.calc_results,
            documents=documents,
            next_actions=build_next_actions(context, missing_items, validation_errors),
            context_preview=build_context_preview(context),
            sources_used=list(context.meta.sources_used),
            warnings=list(context.meta.warnings),
        )

    def _jurisdiction(self, context: CanonicalContext) -> Jurisdiction:
        case = context.permit_case
        authority = context.authority
        return Jurisdiction(
            state=authority.state or case.state,
            county_name=case.county_name or authority.county_name,
            city_name=case.city_name or authority.city_name,
            jurisdiction_type=authority.jurisdiction_type or case.jurisdiction_type,
        )

    async def _persist_summary(
        self,
        case_id: str,
        context: CanonicalContext,
        template: Optional[PermitTemplate],
        resolved: ResolvedTemplate,
        missing_items: Sequence[MissingItem],
        validation_errors: Sequence[ValidationError],
        status: PermitCaseStatus,
        jurisdiction: Jurisdiction,
    ) -> None:
        changes = {
            "authority_id": context.authority.id,
            "template_id": template.id if template else None,
            "state": jurisdiction.state or self.settings.default_state,
            "county_name": jurisdiction.county_name,
            "city_name": jurisdiction.city_name,
            "jurisdiction_type": jurisdiction.jurisdiction_type,
            "application_field_values": resolved.field_values,
            "calculation_results": resolved.calc_results,
            "missing_items": [m.key for m in missing_items],
            "validation_errors": [v.model_dump() for v in validation_errors],
            "status": status.value,
            "updated_at": utc_now_iso(),
        }
        updated = await self._required_write(
            self.store.update("permit_cases", case_id, changes), "update permit case summary"
        )
        if updated is None:
            raise PersistenceError(
                f"Permit case {case_id} disappeared before its summary was saved",
                {"permit_case_id": case_id},
            )

    async def _emit_build_events(
        self,
        tenant_id: str,
        case_id: str,
        authority_detected: bool,
        context: CanonicalContext,
        template: Optional[PermitTemplate],
        resolved: ResolvedTemplate,
        status: PermitCaseStatus,
        user_id: Optional[str],
    ) -> None:
        if authority_detected:
            await self._emit(
                tenant_id,
                case_id,
                PermitEventType.JURISDICTION_DETECTED,
                "Permitting authority detected from job address",
                {
                    "authority_id": context.authority.id,
                    "jurisdiction_type": context.authority.jurisdiction_type,
                },
                user_id,
            )
        if template is not None:
            await self._emit(
                tenant_id,
                case_id,
                PermitEventType.TEMPLATE_SELECTED,
                "Application template selected",
                {
                    "template_id": template.id,
                    "version": template.version,
                    "permit_type": template.permit_type,
                },
                user_id,
            )
        await self._emit(
            tenant_id,
            case_id,
            PermitEventType.CALCS_RUN,
            "Permit case built",
            {
                "status": status.value,
                "field_count": len(resolved.field_values),
                "calc_count": len(resolved.calc_results),
                "calc_error_count": len(resolved.calc_errors),
            },
            user_id,
        )
