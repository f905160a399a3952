"""Tests for the permit build orchestrator."""

import asyncio
import json

import pytest

from permit_expediter.documents.renderer import HtmlDocumentRenderer
from permit_expediter.errors import InvalidRequestError, NotFoundError, PersistenceError
from permit_expediter.pipeline.orchestrator import (
    PermitBuildOrchestrator,
    build_next_actions,
    compute_status,
    versioned_doc_path,
)
from permit_expediter.schemas.build import BuildOptions, BuildRequest
from permit_expediter.schemas.context import AuthoritySection
from permit_expediter.schemas.findings import MissingItem, ValidationError
from permit_expediter.schemas.permit_case import PermitCaseStatus
from permit_expediter.storage import InMemoryPermitStore
from permit_test_helpers import (
    AUTHORITY_ID,
    ESTIMATE_ID,
    JOB_ID,
    OTHER_TENANT_ID,
    TEMPLATE_ID,
    TENANT_ID,
    make_context,
    seed_rows,
)


def request(**options):
    return BuildRequest(job_id=JOB_ID, estimate_id=ESTIMATE_ID, options=BuildOptions(**options))


def event_types(store):
    return [e["event_type"] for e in store.rows("permit_case_events")]


class TestPureHelpers:
    def test_compute_status(self):
        warning = MissingItem(key="missing.job_geo", severity="warning", message="w")
        error = ValidationError(key="required.owner", severity="error", message="e")

        assert compute_status([], []) == PermitCaseStatus.DRAFT_BUILT
        assert compute_status([warning], []) == PermitCaseStatus.DRAFT_BUILT
        assert compute_status([warning], [error]) == PermitCaseStatus.WAITING_ON_DOCS

    def test_next_actions(self):
        context = make_context(authority=AuthoritySection(id="a", portal_url="https://portal.example"))
        missing = [
            MissingItem(key="missing.owner_name", message="m"),
            MissingItem(key="missing.job_geo", severity="warning", message="w"),
        ]
        validation = [ValidationError(key="required.site_address", message="v")]

        actions = build_next_actions(context, missing, validation)

        assert [a.action for a in actions] == ["OPEN_PERMITTING_PORTAL", "FIX_MISSING_ITEMS"]
        assert actions[0].url == "https://portal.example"
        assert actions[0].when == {"status_in": ["DRAFT_BUILT", "READY_TO_SUBMIT", "SUBMITTED"]}
        assert actions[1].items == ["missing.owner_name", "required.site_address"]

    def test_no_actions_without_portal_or_errors(self):
        assert build_next_actions(make_context(), [], []) == []

    def test_versioned_doc_path(self):
        path = versioned_doc_path("t1", "c1", "application.html")
        tenant, case, name = path.split("/")
        assert (tenant, case) == ("t1", "c1")
        assert name.endswith("Z_application.html")


class TestBuild:
    @pytest.mark.asyncio
    async def test_complete_job_is_draft_built(self, orchestrator, store):
        result = await orchestrator.build(TENANT_ID, request(), user_id="user-1")

        assert result.permit_case.status == "DRAFT_BUILT"
        assert result.permit_case.authority_id == AUTHORITY_ID
        assert result.permit_case.template_id == TEMPLATE_ID
        assert result.permit_case.jurisdiction.county_name == "Orange"
        assert result.permit_case.jurisdiction.jurisdiction_type == "COUNTY"
        assert result.missing_items == []
        assert result.validation_errors == []
        assert result.application_field_values["roof_squares"] == 24.5
        assert result.application_field_values["owner_name"] == "LOPEZ, MARIA"
        assert result.calculation_results == {"roof_squares": 24.5}
        assert [a.action for a in result.next_actions] == ["OPEN_PERMITTING_PORTAL"]
        assert result.context_preview["measurements"]["total_roof_area_sqft"] == 2450
        assert result.context_preview["authority"]["county_name"] == "Orange"
        assert result.sources_used[0] == "jobs"

        case = store.rows("permit_cases")[0]
        assert case["status"] == "DRAFT_BUILT"
        assert case["template_id"] == TEMPLATE_ID
        assert case["created_by"] == "user-1"
        assert case["missing_items"] == []

        assert event_types(store) == [
            "CREATED",
            "JURISDICTION_DETECTED",
            "TEMPLATE_SELECTED",
            "CALCS_RUN",
            "APPLICATION_GENERATED",
        ]

    @pytest.mark.asyncio
    async def test_application_document_is_stored(self, orchestrator, store, object_storage):
        result = await orchestrator.build(TENANT_ID, request())

        assert len(result.documents) == 1
        document = result.documents[0]
        assert document.kind == "PERMIT_APPLICATION"
        assert document.content_type == "text/html"
        assert document.path.startswith(f"{TENANT_ID}/{result.permit_case.id}/")
        assert object_storage.verify_signed_url(document.signed_url)

        html = object_storage.object_path(document.bucket, document.path).read_text(encoding="utf-8")
        assert "Orange County Roofing Permit" in html
        assert "LOPEZ, MARIA" in html

        rows = store.rows("permit_documents")
        assert len(rows) == 1
        assert rows[0]["storage_path"] == document.path
        assert rows[0]["file_size_bytes"] > 0

    @pytest.mark.asyncio
    async def test_packet_and_checklist(self, orchestrator, object_storage):
        result = await orchestrator.build(
            TENANT_ID,
            request(generate_application_pdf=False, generate_packet_zip=True, include_checklist_pdf=True),
        )

        assert [d.kind for d in result.documents] == ["PERMIT_PACKET", "CHECKLIST"]
        manifest = result.documents[0]
        data = json.loads(object_storage.object_path(manifest.bucket, manifest.path).read_text())
        assert data["include"] == ["PERMIT_APPLICATION", "MEASUREMENT_REPORT"]
        assert data["permit_case_id"] == result.permit_case.id

    @pytest.mark.asyncio
    async def test_rebuild_reuses_case(self, orchestrator, store):
        first = await orchestrator.build(TENANT_ID, request())
        second = await orchestrator.build(TENANT_ID, request())

        assert first.permit_case.id == second.permit_case.id
        assert len(store.rows("permit_cases")) == 1
        assert event_types(store).count("CREATED") == 1
        # Authority was stored on the case, so the rebuild does not re-detect it
        assert event_types(store).count("JURISDICTION_DETECTED") == 1

    @pytest.mark.asyncio
    async def test_concurrent_builds_share_one_case(self, orchestrator, store):
        first, second = await asyncio.gather(
            orchestrator.build(TENANT_ID, request(generate_application_pdf=False)),
            orchestrator.build(TENANT_ID, request(generate_application_pdf=False)),
        )

        assert first.permit_case.id == second.permit_case.id
        assert len(store.rows("permit_cases")) == 1

    @pytest.mark.asyncio
    async def test_force_rebuild_creates_new_case(self, orchestrator, store):
        first = await orchestrator.build(TENANT_ID, request())
        second = await orchestrator.build(TENANT_ID, request(force_rebuild=True))

        assert first.permit_case.id != second.permit_case.id
        assert len(store.rows("permit_cases")) == 2

    @pytest.mark.asyncio
    async def test_void_case_is_not_reused(self, orchestrator, store):
        first = await orchestrator.build(TENANT_ID, request())
        store.rows("permit_cases")[0]["status"] = "VOID"

        second = await orchestrator.build(TENANT_ID, request())
        assert second.permit_case.id != first.permit_case.id

    @pytest.mark.asyncio
    async def test_status_can_regress_on_rebuild(self, orchestrator, store):
        first = await orchestrator.build(TENANT_ID, request())
        store.rows("permit_job_measurements").clear()

        second = await orchestrator.build(TENANT_ID, request())

        assert first.permit_case.status == "DRAFT_BUILT"
        assert second.permit_case.status == "WAITING_ON_DOCS"
        keys = [m.key for m in second.missing_items]
        assert "missing.measurements_total_roof_area" in keys
        assert "missing.source.measurements" in keys
        assert store.rows("permit_cases")[0]["status"] == "WAITING_ON_DOCS"
        assert "FIX_MISSING_ITEMS" in [a.action for a in second.next_actions]

    @pytest.mark.asyncio
    async def test_dry_run_writes_nothing(self, orchestrator, store, object_storage):
        result = await orchestrator.build(TENANT_ID, request(dry_run=True, include_checklist_pdf=True))

        assert result.permit_case.status == "DRAFT_BUILT"
        assert result.application_field_values["roof_squares"] == 24.5
        assert result.documents == []
        assert store.rows("permit_case_events") == []
        assert store.rows("permit_documents") == []
        assert store.rows("permit_cases")[0]["status"] == "NOT_STARTED"
        assert not object_storage.root.exists()


class TestBuildFindings:
    @pytest.mark.asyncio
    async def test_no_template_for_authority(self, orchestrator, store):
        store.rows("permit_application_templates").clear()

        result = await orchestrator.build(TENANT_ID, request())

        assert result.permit_case.status == "WAITING_ON_DOCS"
        assert result.permit_case.template_id is None
        assert [m.key for m in result.missing_items] == ["missing.template"]
        assert result.application_field_values == {}

    @pytest.mark.asyncio
    async def test_highest_active_version_selected(self, orchestrator, store):
        store.rows("permit_application_templates")[1]["is_active"] = False

        result = await orchestrator.build(TENANT_ID, request())
        assert result.permit_case.template_id == "tpl-orange-roof-v1"

    @pytest.mark.asyncio
    async def test_invalid_template_is_a_missing_item(self, orchestrator, store):
        template = store.rows("permit_application_templates")[1]
        template["template_json"]["validations"][0]["when"]["op"] = "gt"

        result = await orchestrator.build(TENANT_ID, request())

        items = {m.key: m for m in result.missing_items}
        assert items["missing.template"].message.startswith("Permit application template is invalid")
        assert result.permit_case.status == "WAITING_ON_DOCS"

    @pytest.mark.asyncio
    async def test_calc_failure_is_a_warning(self, orchestrator, store):
        fields = store.rows("permit_application_templates")[1]["template_json"]["fields"]
        fields[3]["calc"]["expr"] = 'measurements.total_roof_area_sqft + "sq"'

        result = await orchestrator.build(TENANT_ID, request())

        assert result.application_field_values["roof_squares"] is None
        assert [(v.key, v.severity) for v in result.validation_errors] == [
            ("calc.roof_squares", "warning")
        ]
        assert result.permit_case.status == "DRAFT_BUILT"

    @pytest.mark.asyncio
    async def test_no_authority(self, orchestrator, store):
        store.rows("permitting_authorities").clear()

        result = await orchestrator.build(TENANT_ID, request())
        keys = [m.key for m in result.missing_items]

        assert "missing.authority_not_configured" in keys
        assert "missing.template" in keys
        assert [a.action for a in result.next_actions] == ["FIX_MISSING_ITEMS"]


class TestBuildFailures:
    @pytest.mark.asyncio
    async def test_unknown_job_writes_nothing(self, orchestrator, store):
        bad = BuildRequest(job_id="00000000-0000-4000-8000-000000000000")
        with pytest.raises(NotFoundError) as exc_info:
            await orchestrator.build(TENANT_ID, bad)

        assert exc_info.value.http_status == 404
        assert store.rows("permit_cases") == []

    @pytest.mark.asyncio
    async def test_job_of_another_tenant(self, orchestrator, store):
        with pytest.raises(NotFoundError):
            await orchestrator.build(OTHER_TENANT_ID, request())
        assert store.rows("permit_cases") == []

    @pytest.mark.asyncio
    async def test_missing_tenant_writes_nothing(self, orchestrator, store):
        store.rows("tenants").clear()

        with pytest.raises(NotFoundError) as exc_info:
            await orchestrator.build(TENANT_ID, request())

        assert exc_info.value.entity == "tenant"
        assert store.rows("permit_cases") == []
        assert store.rows("permit_case_events") == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("tenant_id", ["", "   "])
    async def test_blank_tenant_is_rejected(self, orchestrator, store, tenant_id):
        with pytest.raises(InvalidRequestError) as exc_info:
            await orchestrator.build(tenant_id, request())

        assert exc_info.value.http_status == 400
        assert store.rows("permit_cases") == []

    @pytest.mark.asyncio
    async def test_unknown_estimate(self, orchestrator, store):
        bad = BuildRequest(job_id=JOB_ID, estimate_id="00000000-0000-4000-8000-000000000000")
        with pytest.raises(NotFoundError) as exc_info:
            await orchestrator.build(TENANT_ID, bad)
        assert exc_info.value.entity == "estimate"

    @pytest.mark.asyncio
    async def test_document_failure_does_not_fail_build(self, store, object_storage, settings):
        class BrokenRenderer(HtmlDocumentRenderer):
            def render_application(self, template, field_values, context):
                raise RuntimeError("renderer crashed")

        orchestrator = PermitBuildOrchestrator(
            store, object_storage, renderer=BrokenRenderer(), settings=settings
        )
        result = await orchestrator.build(TENANT_ID, request(include_checklist_pdf=True))

        assert result.permit_case.status == "DRAFT_BUILT"
        assert [d.kind for d in result.documents] == ["CHECKLIST"]
        errors = [e for e in store.rows("permit_case_events") if e["event_type"] == "ERROR"]
        assert len(errors) == 1
        assert errors[0]["details"]["error"] == "renderer crashed"

    @pytest.mark.asyncio
    async def test_summary_write_failure(self, object_storage, settings):
        class FailingUpdates(InMemoryPermitStore):
            async def update(self, table, row_id, changes):
                raise OSError("disk full")

        orchestrator = PermitBuildOrchestrator(FailingUpdates(seed_rows()), object_storage, settings=settings)

        with pytest.raises(PersistenceError) as exc_info:
            await orchestrator.build(TENANT_ID, request())
        assert "disk full" in exc_info.value.message
        assert exc_info.value.code.value == "PERSISTENCE_ERROR"

    @pytest.mark.asyncio
    async def test_event_write_failure_is_ignored(self, object_storage, settings):
        class NoEvents(InMemoryPermitStore):
            async def insert(self, table, row):
                if table == "permit_case_events":
                    raise OSError("events unavailable")
                return await super().insert(table, row)

        orchestrator = PermitBuildOrchestrator(NoEvents(seed_rows()), object_storage, settings=settings)

        result = await orchestrator.build(TENANT_ID, request())
        assert result.permit_case.status == "DRAFT_BUILT"
        assert len(result.documents) == 1
