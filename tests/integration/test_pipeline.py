"""
Integration Tests - Pipeline Runs
"""
from datetime import date, timedelta
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from growth_marts.data.generators import DataGenerator
from growth_marts.database.models import (
    Cohort,
    DimCampaign,
    DimChannel,
    DimCustomer,
    DimDate,
    FactOrder,
    FactSpend,
    FactTraffic,
    JobRun,
    JobStatus,
    RawEvent,
    StgCustomer,
    StgOrder,
    StgSpend,
    StgTraffic,
)
from growth_marts.ingestion.raw_capture import ingest_raw
from growth_marts.pipeline import runner
from growth_marts.pipeline.jobs import InvalidJobTransition, get_job, mark_retrying
from growth_marts.pipeline.runner import run_pipeline

SNAPSHOT_MODELS = [
    RawEvent,
    StgOrder,
    StgCustomer,
    StgSpend,
    StgTraffic,
    DimChannel,
    DimCampaign,
    DimCustomer,
    DimDate,
    FactOrder,
    FactSpend,
    FactTraffic,
    Cohort,
]

# Capture timestamps move on every run by design
VOLATILE_COLUMNS = {"fetched_at", "ingested_at"}


async def _snapshot(db):
    snapshot = {}
    async with db.session() as session:
        for model in SNAPSHOT_MODELS:
            columns = [c.name for c in model.__table__.columns if c.name not in VOLATILE_COLUMNS]
            result = await session.execute(select(model))
            rows = [{col: getattr(obj, col) for col in columns} for obj in result.scalars()]
            snapshot[model.__tablename__] = sorted(rows, key=repr)
    return snapshot


async def _count(db, model):
    async with db.session() as session:
        return (await session.execute(select(func.count()).select_from(model))).scalar_one()


@pytest.fixture
def generated_records():
    return DataGenerator(seed=7, start_date=date(2025, 1, 1)).generate_all(n_customers=40, days=45)


class TestGeneratedData:
    """Full runs over synthetic exports"""

    async def test_run_succeeds(self, db, generated_records, pipeline_settings):
        result = await run_pipeline(db, generated_records, settings=pipeline_settings)

        assert result.status is JobStatus.SUCCESS, [c.as_dict() for c in result.failed_checks]
        assert result.rows_loaded == len(generated_records)
        assert result.staging.total_skipped == 0
        assert result.marts.channels == 7
        assert result.cohorts >= 1

        job = await get_job(db, result.job_id)
        assert job.status is JobStatus.SUCCESS
        assert job.rows_loaded == len(generated_records)
        assert job.finished_at >= job.started_at
        assert job.error_detail is None

    async def test_rerun_is_idempotent(self, db, generated_records, pipeline_settings):
        await run_pipeline(db, generated_records, settings=pipeline_settings)
        first = await _snapshot(db)

        await run_pipeline(db, generated_records, settings=pipeline_settings)
        second = await _snapshot(db)

        assert {k: len(v) for k, v in first.items()} == {k: len(v) for k, v in second.items()}
        assert first == second
        assert await _count(db, JobRun) == 2

    async def test_revenue_ordering(self, db, generated_records, pipeline_settings):
        await run_pipeline(db, generated_records, settings=pipeline_settings)

        async with db.session() as session:
            orders = (await session.execute(select(FactOrder))).scalars().all()

        assert orders
        for order in orders:
            assert Decimal("0") <= order.revenue_net <= order.revenue_gross
            assert order.contribution_margin == order.revenue_net - order.cogs - order.shipping_cost - order.ops_cost

    async def test_dim_date_is_continuous(self, db, generated_records, pipeline_settings):
        await run_pipeline(db, generated_records, settings=pipeline_settings)

        async with db.session() as session:
            days = list((await session.execute(select(DimDate.full_date).order_by(DimDate.full_date))).scalars())

        assert days[0] <= pipeline_settings.date_seed_start
        assert days[-1] >= pipeline_settings.date_seed_end
        assert (days[-1] - days[0]).days + 1 == len(days)

    async def test_cohorts_bounded_and_monotone(self, db, generated_records, pipeline_settings):
        await run_pipeline(db, generated_records, settings=pipeline_settings)

        async with db.session() as session:
            cohorts = (await session.execute(select(Cohort))).scalars().all()
            members = (
                await session.execute(select(func.count()).select_from(DimCustomer).where(DimCustomer.cohort_month.is_not(None)))
            ).scalar_one()

        assert sum(c.cohort_size for c in cohorts) == members
        for c in cohorts:
            assert 0 <= c.d7_retention <= c.d30_retention <= c.d60_retention <= c.d90_retention <= 1
            assert c.ltv30 <= c.ltv90 <= c.ltv180


class TestEndToEnd:
    """Hand-built scenario with known outcomes"""

    @pytest.fixture
    def records(self, order_record, meta_record, ga4_record):
        return [
            order_record(1001, "2025-03-05T10:00:00Z", total_price="200.00", total_discounts="20.00"),
            order_record(1002, "2025-03-08T10:00:00Z", total_price="100.00", total_discounts="10.00"),
            # prior-month guest checkout
            order_record(990, "2025-02-20T10:00:00Z", total_price="50.00", customer_id=None, tags="new_customer"),
            meta_record("2025-03-05", spend="100.00"),
            ga4_record("2025-03-05", group="Paid Social"),
            ga4_record("2025-03-05", group="Organic Search", sessions=400),
            ga4_record("2025-03-05", group="Organic Social", sessions=100),
        ]

    async def test_single_customer_cohort(self, db, records, pipeline_settings):
        result = await run_pipeline(db, records, settings=pipeline_settings)
        assert result.status is JobStatus.SUCCESS, [c.as_dict() for c in result.failed_checks]

        async with db.session() as session:
            cohorts = (await session.execute(select(Cohort))).scalars().all()

        assert [c.cohort_month for c in cohorts] == ["2025-03"]
        cohort = cohorts[0]
        assert cohort.cohort_size == 1
        assert cohort.d7_retention == cohort.d30_retention == cohort.d60_retention == cohort.d90_retention == 1.0
        assert cohort.ltv30 == Decimal("270.00")
        assert cohort.avg_cac == Decimal("100.00")
        # 100 / (270 x 0.35 / 30)
        assert cohort.payback_days == 32

    async def test_order_facts(self, db, records, pipeline_settings):
        await run_pipeline(db, records, settings=pipeline_settings)

        async with db.session() as session:
            orders = {o.order_id: o for o in (await session.execute(select(FactOrder))).scalars()}
            campaign = (await session.execute(select(DimCampaign))).scalar_one()
            customer = await session.get(DimCustomer, "501")

        first = orders["1001"]
        assert first.revenue_net == Decimal("180.00")
        assert first.cogs == Decimal("110.00")
        assert first.shipping_cost == Decimal("14.40")
        assert first.ops_cost == Decimal("9.00")
        assert first.contribution_margin == Decimal("46.60")
        assert first.is_new_customer is True
        assert first.campaign_id == campaign.id
        assert orders["1002"].is_new_customer is False

        guest = orders["990"]
        assert guest.customer_id is None
        assert guest.is_new_customer is True

        assert customer.cohort_month == "2025-03"
        assert customer.total_orders == 2
        assert customer.total_revenue == Decimal("270.00")

    async def test_traffic_groups_summed_per_channel(self, db, records, pipeline_settings):
        await run_pipeline(db, records, settings=pipeline_settings)

        async with db.session() as session:
            rows = (
                await session.execute(
                    select(DimChannel.slug, FactTraffic.sessions)
                    .select_from(FactTraffic)
                    .join(DimChannel, FactTraffic.channel_id == DimChannel.id)
                )
            ).all()

        sessions = {slug.value: count for slug, count in rows}
        assert sessions == {"meta": 1000, "organic": 500}

    async def test_spend_without_campaign(self, db, records, meta_record, pipeline_settings):
        untagged = meta_record("2025-03-06", spend="25.00")
        untagged["payload"].pop("campaign_id")
        untagged["externalId"] = "untagged_2025-03-06"

        await run_pipeline(db, records + [untagged], settings=pipeline_settings)

        async with db.session() as session:
            spend = (await session.execute(select(FactSpend).where(FactSpend.date == date(2025, 3, 6)))).scalar_one()

        assert spend.campaign_id is None
        assert spend.campaign_key == ""
        assert spend.spend == Decimal("25.00")


class TestRecapture:
    """Re-running after raw records were re-captured with different content"""

    @pytest.fixture
    def context(self, meta_record, ga4_record):
        return [meta_record("2025-03-05"), ga4_record("2025-03-05")]

    async def _ids(self, db, column):
        async with db.session() as session:
            return sorted((await session.execute(select(column))).scalars())

    async def test_corrected_customer_replaces_old_one(self, db, order_record, context, pipeline_settings):
        await run_pipeline(db, [order_record(1001, "2025-03-05T10:00:00Z")] + context, settings=pipeline_settings)
        await run_pipeline(
            db, [order_record(1001, "2025-03-05T10:00:00Z", customer_id="502")], settings=pipeline_settings
        )

        assert await self._ids(db, StgCustomer.customer_id) == ["502"]
        assert await self._ids(db, DimCustomer.customer_id) == ["502"]

        async with db.session() as session:
            cohort = (await session.execute(select(Cohort))).scalar_one()

        assert cohort.cohort_size == 1
        assert cohort.ltv30 == Decimal("100.00")

    async def test_order_turned_malformed_drops_facts(self, db, order_record, context, pipeline_settings):
        records = [order_record(1001, "2025-03-05T10:00:00Z"), order_record(1002, "2025-03-08T10:00:00Z")]
        await run_pipeline(db, records + context, settings=pipeline_settings)

        result = await run_pipeline(
            db, [order_record(1001, "2025-03-05T10:00:00Z", total_price="lots")], settings=pipeline_settings
        )

        assert result.staging.skipped == {"shopify/orders": 1}
        assert await self._ids(db, StgOrder.order_id) == ["1002"]
        assert await self._ids(db, FactOrder.order_id) == ["1002"]

        async with db.session() as session:
            customer = await session.get(DimCustomer, "501")
        assert customer.total_orders == 1
        assert customer.first_order_date == date(2025, 3, 8)

    async def test_renumbered_order_replaces_old_fact(self, db, order_record, context, pipeline_settings):
        await run_pipeline(db, [order_record(1001, "2025-03-05T10:00:00Z")] + context, settings=pipeline_settings)

        renumbered = order_record(1005, "2025-03-05T10:00:00Z")
        renumbered["externalId"] = "1001"
        await run_pipeline(db, [renumbered], settings=pipeline_settings)

        assert await self._ids(db, FactOrder.order_id) == ["1005"]

    async def test_recaptured_campaign_replaces_old_one(
        self, db, order_record, meta_record, ga4_record, pipeline_settings
    ):
        records = [order_record(1001, "2025-03-05T10:00:00Z"), meta_record("2025-03-05"), ga4_record("2025-03-05")]
        await run_pipeline(db, records, settings=pipeline_settings)

        moved = meta_record("2025-03-05", campaign_id="meta_camp_002")
        moved["externalId"] = "meta_camp_001_2025-03-05"
        await run_pipeline(db, [moved], settings=pipeline_settings)

        assert await self._ids(db, DimCampaign.campaign_id) == ["meta_camp_002"]
        assert await _count(db, FactSpend) == 1

        async with db.session() as session:
            campaign = (await session.execute(select(DimCampaign))).scalar_one()
            order = await session.get(FactOrder, "1001")
        assert order.campaign_id == campaign.id


class TestFailures:
    """Validation failures, malformed input and infrastructure errors"""

    async def test_validation_failure_keeps_marts(self, db, order_record, pipeline_settings):
        records = [order_record(1, "2025-03-05T10:00:00Z")]
        result = await run_pipeline(db, records, settings=pipeline_settings)

        assert result.status is JobStatus.FAILED
        failed = {c.check for c in result.failed_checks}
        assert {"spend_not_empty", "traffic_not_empty"} <= failed

        job = await get_job(db, result.job_id)
        assert job.status is JobStatus.FAILED
        assert {c["check"] for c in job.error_detail["failed_checks"]} == failed
        assert await _count(db, FactOrder) == 1
        assert await _count(db, Cohort) == 1

    async def test_retry_resumes_same_job(self, db, order_record, meta_record, ga4_record, pipeline_settings):
        failed = await run_pipeline(db, [order_record(1, "2025-03-05T10:00:00Z")], settings=pipeline_settings)
        assert failed.status is JobStatus.FAILED

        await mark_retrying(db, failed.job_id)
        retried = await run_pipeline(
            db,
            [meta_record("2025-03-05"), ga4_record("2025-03-05")],
            settings=pipeline_settings,
            retry_of=failed.job_id,
        )

        assert retried.job_id == failed.job_id
        assert retried.status is JobStatus.SUCCESS
        assert await _count(db, JobRun) == 1
        assert (await get_job(db, failed.job_id)).error_detail is None

    async def test_retry_requires_retrying_status(self, db, order_record, pipeline_settings):
        failed = await run_pipeline(db, [order_record(1, "2025-03-05T10:00:00Z")], settings=pipeline_settings)

        with pytest.raises(InvalidJobTransition):
            await run_pipeline(db, [], settings=pipeline_settings, retry_of=failed.job_id)

    async def test_malformed_records_skipped(self, db, order_record, pipeline_settings):
        records = [
            order_record(1, "2025-03-05T10:00:00Z"),
            order_record(2, "2025-03-06T10:00:00Z", total_price="lots"),
            {"source": "shopify"},
        ]
        result = await run_pipeline(db, records, settings=pipeline_settings)

        assert result.rows_loaded == 2
        assert result.staging.skipped == {"shopify/orders": 1}
        assert result.staging.orders == 1

    async def test_stage_exception_marks_job_failed(self, db, order_record, pipeline_settings, monkeypatch):
        async def broken(session, settings):
            raise RuntimeError("mart build exploded")

        monkeypatch.setattr(runner, "build_marts", broken)

        with pytest.raises(RuntimeError, match="exploded"):
            await run_pipeline(db, [order_record(1, "2025-03-05T10:00:00Z")], settings=pipeline_settings)

        async with db.session() as session:
            job = (await session.execute(select(JobRun))).scalar_one()

        assert job.status is JobStatus.FAILED
        assert job.error_detail == {"message": "mart build exploded", "error_type": "RuntimeError"}
        # earlier stages committed on their own
        assert await _count(db, StgOrder) == 1
        assert await _count(db, FactOrder) == 0


class TestRawCapture:

    async def test_recapture_overwrites(self, db, order_record):
        record = order_record(1, "2025-03-05T10:00:00Z")
        async with db.session() as session:
            await ingest_raw(session, [record])

        changed = order_record(1, "2025-03-05T10:00:00Z", total_price="150.00")
        async with db.session() as session:
            await ingest_raw(session, [changed])

        async with db.session() as session:
            rows = (await session.execute(select(RawEvent))).scalars().all()

        assert len(rows) == 1
        assert rows[0].payload["total_price"] == "150.00"

    async def test_snake_case_and_missing_ids(self, db):
        records = [
            {"source": "GA4", "entity": "traffic", "external_id": 42, "payload": {"a": 1}},
            {"source": "ga4", "entity": "traffic", "payload": {"b": 2}},
            {"source": "ga4", "entity": "traffic", "payload": {"b": 2}},
        ]
        async with db.session() as session:
            written = await ingest_raw(session, records, batch_size=2)

        async with db.session() as session:
            rows = (await session.execute(select(RawEvent))).scalars().all()

        assert written == 3
        assert len(rows) == 2
        by_length = {len(r.external_id): r for r in rows}
        assert by_length[2].external_id == "42"
        assert by_length[2].source == "ga4"
        assert by_length[64].payload == {"b": 2}

    async def test_dim_date_extends_before_seed(self, db, order_record, pipeline_settings):
        early = pipeline_settings.date_seed_start - timedelta(days=10)
        await run_pipeline(db, [order_record(1, f"{early.isoformat()}T08:00:00Z")], settings=pipeline_settings)

        async with db.session() as session:
            first = (await session.execute(select(func.min(DimDate.full_date)))).scalar_one()
            total = await session.scalar(select(func.count()).select_from(DimDate))

        assert first == early
        assert total == (pipeline_settings.date_seed_end - early).days + 1
