"""Tests for canonical context aggregation."""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from permit_expediter.config.settings import PermitBuilderSettings
from permit_expediter.errors import NotFoundError, StoreTimeoutError
from permit_expediter.pipeline.context_aggregator import (
    SOURCE_ORDER,
    STALE_PARCEL_WARNING,
    ContextAggregator,
    compose_address,
    is_stale,
    select_measurement,
    split_owner_name,
)
from permit_expediter.schemas.build import BuildOptions
from permit_expediter.storage import InMemoryPermitStore
from permit_test_helpers import (
    AUTHORITY_ID,
    CONTACT_ID,
    ESTIMATE_ID,
    JOB_ID,
    OTHER_TENANT_ID,
    TENANT_ID,
    days_ago,
    seed_rows,
)

CASE_ID = "case-1"


def with_case(rows, **case_fields):
    case = {"id": CASE_ID, "tenant_id": TENANT_ID, "job_id": JOB_ID, "status": "NOT_STARTED"}
    case.update(case_fields)
    rows["permit_cases"] = [case]
    return rows


def aggregator_for(rows, settings=None):
    return ContextAggregator(InMemoryPermitStore(rows), settings or PermitBuilderSettings())


class TestHelpers:
    def test_compose_address(self):
        assert compose_address("123 Palm Ave", "Orlando", "FL", "32801") == "123 Palm Ave, Orlando, FL 32801"
        assert compose_address(" 123 Palm Ave ", None, "FL", "") == "123 Palm Ave, FL"
        assert compose_address(None, "  ", None, None) is None

    def test_split_owner_name(self):
        assert split_owner_name("LOPEZ, MARIA") == ("MARIA", "LOPEZ")
        assert split_owner_name("Maria del Carmen Lopez") == ("Maria", "del Carmen Lopez")
        assert split_owner_name("Cher") == ("Cher", None)
        assert split_owner_name("  ") == (None, None)

    def test_is_stale(self):
        now = datetime(2026, 10, 10, tzinfo=timezone.utc)
        assert not is_stale("2026-10-05T00:00:00Z", 7, now=now)
        assert is_stale("2026-09-01T00:00:00Z", 7, now=now)
        assert is_stale(None, 7, now=now)
        assert is_stale("yesterday", 7, now=now)


class TestSelectMeasurement:
    def test_roofr_wins_regardless_of_timestamps(self):
        rows = [
            {"id": "manual", "source": "MANUAL", "measured_at": "2026-10-01T00:00:00Z"},
            {"id": "eagleview", "source": "EAGLEVIEW", "measured_at": "2026-09-01T00:00:00Z"},
            {"id": "roofr", "source": "ROOFR", "measured_at": "2025-01-01T00:00:00Z"},
        ]
        assert select_measurement(rows)["id"] == "roofr"

    def test_eagleview_beats_manual(self):
        rows = [
            {"id": "manual", "source": "MANUAL", "measured_at": "2026-10-01T00:00:00Z"},
            {"id": "eagleview", "source": "EAGLEVIEW", "measured_at": "2024-01-01T00:00:00Z"},
        ]
        assert select_measurement(rows)["id"] == "eagleview"

    def test_newest_within_source(self):
        rows = [
            {"id": "old", "source": "ROOFR", "measured_at": "2026-01-01T00:00:00Z"},
            {"id": "new", "source": "ROOFR", "measured_at": "2026-06-01T00:00:00Z"},
        ]
        assert select_measurement(rows)["id"] == "new"

    def test_unknown_sources_fall_back_to_most_recent(self):
        rows = [
            {"id": "a", "source": "DRONE", "measured_at": "2026-01-01T00:00:00Z"},
            {"id": "b", "source": "HOVER", "measured_at": "2026-03-01T00:00:00Z"},
        ]
        assert select_measurement(rows)["id"] == "b"

    def test_newest_within_source_across_offsets(self):
        """Timestamps are compared as instants, not as strings."""
        rows = [
            {"id": "older", "source": "ROOFR", "measured_at": "2024-01-02T00:00:00+00:00"},
            {"id": "newer", "source": "ROOFR", "measured_at": "2024-01-01T23:00:00-05:00"},
        ]
        assert select_measurement(rows)["id"] == "newer"

    def test_fallback_across_formats(self):
        rows = [
            {"id": "older", "source": "AI_GENERATED", "measured_at": "2024-03-01T12:00:00Z"},
            {"id": "newer", "source": "DRONE", "measured_at": "2024-03-01 18:00:00"},
        ]
        assert select_measurement(rows)["id"] == "newer"

    def test_missing_or_bad_timestamps_lose(self):
        rows = [
            {"id": "none", "source": "ROOFR", "measured_at": None},
            {"id": "dated", "source": "ROOFR", "measured_at": "2020-01-01T00:00:00Z"},
            {"id": "garbage", "source": "ROOFR", "measured_at": "last tuesday"},
        ]
        assert select_measurement(rows)["id"] == "dated"

    def test_no_rows(self):
        assert select_measurement([]) is None


class TestBuildContext:
    @pytest.mark.asyncio
    async def test_complete_job(self):
        aggregator = aggregator_for(with_case(seed_rows()))

        result = await aggregator.build(TENANT_ID, CASE_ID, JOB_ID, ESTIMATE_ID)
        ctx = result.context

        assert result.missing == []
        assert result.authority_detected is True
        assert ctx.meta.sources_used == SOURCE_ORDER
        assert ctx.meta.warnings == ()
        assert ctx.authority.id == AUTHORITY_ID
        assert ctx.job.address.full == "123 Palm Ave, Orlando, FL 32801"
        assert ctx.job.year_built == 1998
        assert ctx.owner_contact.full_name == "LOPEZ, MARIA"
        assert ctx.owner_contact.first_name == "MARIA"
        assert ctx.owner_contact.last_name == "LOPEZ"
        assert ctx.owner_contact.mailing_address.full == "123 Palm Ave, Orlando, FL 32801"
        assert ctx.parcel.parcel_id == "28-22-29-0000-00-001"
        assert ctx.parcel.is_stale is False
        assert ctx.measurements.source == "ROOFR"
        assert ctx.measurements.report.path.endswith("roofr.pdf")
        assert ctx.estimate.contract_total == 18500.0
        assert ctx.estimate.primary_roof_system.category == "SHINGLE"
        assert ctx.products.primary.fl_product_approval_no == "FL10124-R30"
        assert [c.product_id for c in ctx.products.components] == ["prod-underlayment"]
        assert len(ctx.products.approval_documents) == 1
        assert ctx.company.legal_name == "Sunshine Roofing LLC"
        assert ctx.company.signature.signer_name == "Dana Reyes"

    @pytest.mark.asyncio
    async def test_orange_county_job_without_contact_or_parcel(self):
        rows = seed_rows()
        rows["jobs"][0]["contact_id"] = None
        rows["jobs"][0]["address_county"] = None
        rows["property_parcel_cache"] = []
        rows["permitting_authorities"] = []
        aggregator = aggregator_for(with_case(rows, county_name="Orange"))

        result = await aggregator.build(TENANT_ID, CASE_ID, JOB_ID, ESTIMATE_ID)
        missing = {m.key: m.severity for m in result.missing}

        assert missing["missing.owner_name"] == "error"
        assert missing["missing.parcel_id"] == "warning"
        assert result.context.parcel.county_name == "Orange"
        assert result.context.owner_contact.full_name is None
        assert "property_parcel_cache" not in result.context.meta.sources_used
        assert "contacts" not in result.context.meta.sources_used

    @pytest.mark.asyncio
    async def test_measurement_preference_through_the_store(self):
        rows = seed_rows()
        rows["permit_job_measurements"] = [
            {"id": "m-manual", "tenant_id": TENANT_ID, "job_id": JOB_ID, "source": "MANUAL",
             "measured_at": days_ago(1), "total_roof_area_sqft": 2600},
            {"id": "m-ev", "tenant_id": TENANT_ID, "job_id": JOB_ID, "source": "EAGLEVIEW",
             "measured_at": days_ago(5), "total_roof_area_sqft": 2500},
            {"id": "m-roofr", "tenant_id": TENANT_ID, "job_id": JOB_ID, "source": "ROOFR",
             "measured_at": days_ago(30), "total_roof_area_sqft": 2450},
        ]
        result = await aggregator_for(with_case(rows)).build(TENANT_ID, CASE_ID, JOB_ID)
        assert result.context.measurements.id == "m-roofr"

    @pytest.mark.asyncio
    async def test_stale_parcel_adds_warning(self):
        rows = seed_rows()
        rows["property_parcel_cache"][0]["fetched_at"] = days_ago(30)
        result = await aggregator_for(with_case(rows)).build(TENANT_ID, CASE_ID, JOB_ID)

        assert result.context.parcel.is_stale is True
        assert result.context.meta.warnings == (STALE_PARCEL_WARNING,)

    @pytest.mark.asyncio
    async def test_parcel_ttl_option_overrides_settings(self):
        rows = seed_rows()
        rows["property_parcel_cache"][0]["fetched_at"] = days_ago(3)
        aggregator = aggregator_for(with_case(rows))

        default = await aggregator.build(TENANT_ID, CASE_ID, JOB_ID)
        strict = await aggregator.build(
            TENANT_ID, CASE_ID, JOB_ID, options=BuildOptions(parcel_cache_ttl_days=1)
        )

        assert default.context.parcel.is_stale is False
        assert strict.context.parcel.is_stale is True

    @pytest.mark.asyncio
    async def test_job_address_falls_back_to_contact(self):
        rows = seed_rows()
        job = rows["jobs"][0]
        for key in ("address_street", "address_city", "address_state", "address_zip", "latitude", "longitude"):
            job.pop(key)
        rows["contacts"][0].update({"latitude": 28.5, "longitude": -81.4})

        result = await aggregator_for(with_case(rows)).build(TENANT_ID, CASE_ID, JOB_ID)

        assert result.context.job.address.full == "123 Palm Ave, Orlando, FL 32801"
        assert result.context.job.geo.lat == 28.5

    @pytest.mark.asyncio
    async def test_rows_of_other_tenants_are_invisible(self):
        rows = seed_rows()
        rows["contacts"][0]["tenant_id"] = OTHER_TENANT_ID
        rows["permit_job_measurements"][0]["tenant_id"] = OTHER_TENANT_ID

        result = await aggregator_for(with_case(rows)).build(TENANT_ID, CASE_ID, JOB_ID)

        assert result.context.owner_contact.contact_id is None
        assert result.context.measurements.id is None
        assert "missing.measurements_total_roof_area" in [m.key for m in result.missing]

    @pytest.mark.asyncio
    async def test_without_estimate_products_are_empty(self):
        result = await aggregator_for(with_case(seed_rows())).build(TENANT_ID, CASE_ID, JOB_ID)
        missing = [m.key for m in result.missing]

        assert result.context.estimate.id is None
        assert result.context.products.primary.product_id is None
        assert "missing.estimate_selected" in missing
        assert "missing.product_mapping_primary" in missing


class TestAuthorityDetection:
    @pytest.mark.asyncio
    async def test_city_beats_county(self):
        rows = seed_rows()
        rows["permitting_authorities"].append(
            {"id": "auth-orlando", "tenant_id": TENANT_ID, "jurisdiction_type": "CITY",
             "state": "FL", "city_name": "ORLANDO", "county_name": "Orange", "is_active": True}
        )
        result = await aggregator_for(with_case(rows)).build(TENANT_ID, CASE_ID, JOB_ID)
        assert result.context.authority.id == "auth-orlando"
        assert result.context.authority.jurisdiction_type == "CITY"

    @pytest.mark.asyncio
    async def test_county_suffix_is_ignored(self):
        rows = seed_rows()
        rows["jobs"][0]["address_county"] = "Orange County"
        result = await aggregator_for(with_case(rows)).build(TENANT_ID, CASE_ID, JOB_ID)
        assert result.context.authority.id == AUTHORITY_ID

    @pytest.mark.asyncio
    async def test_inactive_and_other_state_authorities_ignored(self):
        rows = seed_rows()
        rows["permitting_authorities"][0]["is_active"] = False
        rows["permitting_authorities"].append(
            {"id": "auth-ca", "tenant_id": TENANT_ID, "jurisdiction_type": "COUNTY",
             "state": "CA", "county_name": "Orange", "is_active": True}
        )
        result = await aggregator_for(with_case(rows)).build(TENANT_ID, CASE_ID, JOB_ID)

        assert result.context.authority.id is None
        assert result.authority_detected is False
        assert "missing.authority_not_configured" in [m.key for m in result.missing]

    @pytest.mark.asyncio
    async def test_detection_can_be_disabled(self):
        aggregator = aggregator_for(with_case(seed_rows()))
        result = await aggregator.build(
            TENANT_ID, CASE_ID, JOB_ID, options=BuildOptions(auto_detect_jurisdiction=False)
        )
        assert result.context.authority.id is None

    @pytest.mark.asyncio
    async def test_assigned_authority_is_used_without_detection(self):
        rows = seed_rows()
        rows["permitting_authorities"].append(
            {"id": "auth-assigned", "tenant_id": TENANT_ID, "jurisdiction_type": "COUNTY",
             "state": "FL", "county_name": "Seminole", "is_active": True}
        )
        result = await aggregator_for(with_case(rows, authority_id="auth-assigned")).build(
            TENANT_ID, CASE_ID, JOB_ID
        )
        assert result.context.authority.id == "auth-assigned"
        assert result.authority_detected is False


class TestAggregationFailures:
    @pytest.mark.asyncio
    async def test_missing_job(self):
        aggregator = aggregator_for(with_case(seed_rows()))
        with pytest.raises(NotFoundError) as exc_info:
            await aggregator.build(TENANT_ID, CASE_ID, "no-such-job")
        assert exc_info.value.entity == "job"

    @pytest.mark.asyncio
    async def test_job_of_another_tenant(self):
        aggregator = aggregator_for(with_case(seed_rows()))
        with pytest.raises(NotFoundError):
            await aggregator.build(OTHER_TENANT_ID, CASE_ID, JOB_ID)

    @pytest.mark.asyncio
    async def test_missing_estimate(self):
        aggregator = aggregator_for(with_case(seed_rows()))
        with pytest.raises(NotFoundError) as exc_info:
            await aggregator.build(TENANT_ID, CASE_ID, JOB_ID, "no-such-estimate")
        assert exc_info.value.entity == "estimate"

    @pytest.mark.asyncio
    async def test_store_timeout(self):
        class SlowStore(InMemoryPermitStore):
            async def get(self, table, row_id):
                await asyncio.sleep(1)
                return await super().get(table, row_id)

        aggregator = ContextAggregator(
            SlowStore(with_case(seed_rows())), PermitBuilderSettings(store_timeout_seconds=0.01)
        )
        with pytest.raises(StoreTimeoutError) as exc_info:
            await aggregator.build(TENANT_ID, CASE_ID, JOB_ID)
        assert exc_info.value.code.value == "UPSTREAM_TIMEOUT"
