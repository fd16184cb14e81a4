"""
Mart Builder

Builds the star schema from staging:

1. dim_channel   - seeded from ChannelSlug
2. dim_campaign  - distinct (source, campaign_id) seen in spend
3. dim_customer  - staged customers with their cohort month
4. dim_date      - continuous calendar over the seed range and all fact dates
5. fact_orders   - cost allocation and contribution margin per order
6. fact_spend    - spend aggregated per (date, channel, campaign)
7. fact_traffic  - analytics groups resolved to channels, summed per day

Dimensions are written before facts so foreign keys always resolve. Every
write is an upsert on the natural key; an unchanged re-run rewrites identical
values. Fact, customer and campaign rows no longer backed by staging are
deleted, facts first.
"""

from collections import defaultdict
from dataclasses import dataclass
from datetime import date, timedelta
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Tuple
import uuid

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from growth_marts.config.settings import PipelineSettings
from growth_marts.database.models import (
    ChannelSlug,
    DimCampaign,
    DimChannel,
    DimCustomer,
    DimDate,
    FactOrder,
    FactSpend,
    FactTraffic,
    StgCustomer,
    StgOrder,
    StgSpend,
    StgTraffic,
)
from growth_marts.database.upsert import prune_missing, upsert_many
from .channels import Vocabulary, campaign_source_for, paid_source_channel, resolve
from .cleaners import ZERO, quantize_money

logger = structlog.get_logger(__name__)


@dataclass
class MartCounts:
    """Rows upserted per mart table"""
    channels: int = 0
    campaigns: int = 0
    customers: int = 0
    dates: int = 0
    orders: int = 0
    spend: int = 0
    traffic: int = 0
    pruned: int = 0

    @property
    def facts(self) -> int:
        return self.orders + self.spend + self.traffic


def date_key(d: date) -> int:
    """YYYYMMDD surrogate used by dim_date"""
    return int(d.strftime("%Y%m%d"))


def cohort_month(d: date) -> str:
    return d.strftime("%Y-%m")


# =============================================================================
# DIMENSIONS
# =============================================================================

async def seed_channels(session: AsyncSession) -> Dict[ChannelSlug, uuid.UUID]:
    """Insert every canonical channel once; return slug -> surrogate id"""
    rows = [{"slug": slug, "name": slug.display_name} for slug in ChannelSlug]
    await upsert_many(session, DimChannel, rows, conflict_columns=["slug"], update_columns=["name"])

    result = await session.execute(select(DimChannel.slug, DimChannel.id))
    return {slug: channel_id for slug, channel_id in result.all()}


async def build_campaigns(
    session: AsyncSession,
    channel_ids: Dict[ChannelSlug, uuid.UUID],
) -> Dict[Tuple[str, str], uuid.UUID]:
    """
    Upsert dim_campaign from staged spend.

    Campaign names can change over time; the most recent name wins.

    Returns:
        (source, campaign_id) -> surrogate id for campaigns still in staging
    """
    result = await session.execute(
        select(StgSpend.source, StgSpend.campaign_id, StgSpend.campaign_name)
        .where(StgSpend.campaign_id != "")
        .order_by(StgSpend.date)
    )
    latest: Dict[Tuple[str, str], str] = {}
    for source, campaign_id, campaign_name in result.all():
        latest[(source, campaign_id)] = campaign_name

    rows = [
        {
            "source": source,
            "campaign_id": campaign_id,
            "campaign_name": name or campaign_id,
            "channel_id": channel_ids[paid_source_channel(source) or ChannelSlug.OTHER],
        }
        for (source, campaign_id), name in sorted(latest.items())
    ]
    await upsert_many(
        session,
        DimCampaign,
        rows,
        conflict_columns=["source", "campaign_id"],
        update_columns=["campaign_name", "channel_id"],
    )

    result = await session.execute(select(DimCampaign.source, DimCampaign.campaign_id, DimCampaign.id))
    return {
        (source, campaign_id): pk
        for source, campaign_id, pk in result.all()
        if (source, campaign_id) in latest
    }


async def build_customers(session: AsyncSession) -> List[str]:
    """Upsert dim_customer and return the staged customer ids; the cohort month always follows first_order_at"""
    result = await session.execute(select(StgCustomer).order_by(StgCustomer.customer_id))
    rows = []
    for customer in result.scalars():
        first = customer.first_order_at
        rows.append({
            "customer_id": customer.customer_id,
            "email": customer.email,
            "first_order_at": first,
            "first_order_date": first.date() if first else None,
            "acquisition_channel": customer.acquisition_channel,
            "cohort_month": cohort_month(first) if first else None,
            "region": customer.region,
            "total_orders": customer.total_orders,
            "total_revenue": customer.total_revenue,
        })
    await upsert_many(session, DimCustomer, rows, conflict_columns=["customer_id"])
    return [row["customer_id"] for row in rows]


def build_dim_dates(start: date, end: date) -> List[Dict[str, Any]]:
    """Calendar rows for every day from start to end, inclusive"""
    rows = []
    for offset in range((end - start).days + 1):
        d = start + timedelta(days=offset)
        rows.append({
            "date_key": date_key(d),
            "full_date": d,
            "day_of_week": d.weekday(),
            "day_name": d.strftime("%A"),
            "week_of_year": d.isocalendar()[1],
            "month": d.month,
            "month_name": d.strftime("%B"),
            "quarter": (d.month - 1) // 3 + 1,
            "year": d.year,
            "is_weekend": d.weekday() >= 5,
        })
    return rows


async def seed_dim_dates(session: AsyncSession, settings: PipelineSettings, fact_dates: Iterable[date]) -> int:
    """
    Extend dim_date to cover the seed range and every fact date without gaps.

    The existing table bounds are included too, so a narrower run never
    leaves a hole between old and new coverage.
    """
    bounds = [settings.date_seed_start, settings.date_seed_end, *fact_dates]

    result = await session.execute(select(DimDate.full_date).order_by(DimDate.full_date).limit(1))
    existing_start = result.scalar_one_or_none()
    result = await session.execute(select(DimDate.full_date).order_by(DimDate.full_date.desc()).limit(1))
    existing_end = result.scalar_one_or_none()
    bounds.extend(d for d in (existing_start, existing_end) if d is not None)

    rows = build_dim_dates(min(bounds), max(bounds))
    return await upsert_many(session, DimDate, rows, conflict_columns=["date_key"])


# =============================================================================
# FACTS
# =============================================================================

def campaign_name_index(
    campaign_ids: Dict[Tuple[str, str], uuid.UUID],
    names: Dict[Tuple[str, str], str],
) -> Dict[Tuple[str, str], uuid.UUID]:
    """(source, campaign name) -> campaign surrogate; lowest campaign id wins on name clashes"""
    index: Dict[Tuple[str, str], uuid.UUID] = {}
    for key in sorted(campaign_ids):
        name = names.get(key)
        if name:
            index.setdefault((key[0], name), campaign_ids[key])
    return index


def order_fact_row(
    order: StgOrder,
    channel_ids: Dict[ChannelSlug, uuid.UUID],
    campaigns_by_name: Dict[Tuple[str, str], uuid.UUID],
    settings: PipelineSettings,
) -> Dict[str, Any]:
    """Cost allocation for one staged order"""
    net = order.revenue_net
    shipping = quantize_money(net * Decimal(str(settings.shipping_cost_rate)))
    ops = quantize_money(net * Decimal(str(settings.ops_cost_rate)))
    cogs = order.cogs_estimate

    campaign_id: Optional[uuid.UUID] = None
    source = campaign_source_for(order.channel)
    if source and order.utm_campaign:
        campaign_id = campaigns_by_name.get((source, order.utm_campaign.strip()))

    return {
        "order_id": order.order_id,
        "order_at": order.order_at,
        "order_date": order.order_date,
        "date_key": date_key(order.order_date),
        "customer_id": order.customer_id,
        "revenue_gross": order.revenue_gross,
        "discounts": order.discounts,
        "refunds": order.refunds,
        "revenue_net": net,
        "cogs": cogs,
        "shipping_cost": shipping,
        "ops_cost": ops,
        "contribution_margin": net - cogs - shipping - ops,
        "channel_id": channel_ids[order.channel],
        "campaign_id": campaign_id,
        "category": order.category,
        "region": order.region,
        "is_new_customer": order.is_new_customer,
    }


def aggregate_spend(
    spend_rows: Iterable[StgSpend],
    channel_ids: Dict[ChannelSlug, uuid.UUID],
    campaign_ids: Dict[Tuple[str, str], uuid.UUID],
) -> List[Dict[str, Any]]:
    """Sum staged spend per (date, channel, campaign)"""
    totals: Dict[Tuple[date, uuid.UUID, str], Dict[str, Any]] = {}
    for row in spend_rows:
        channel_id = channel_ids[paid_source_channel(row.source) or ChannelSlug.OTHER]
        campaign_id = campaign_ids.get((row.source, row.campaign_id)) if row.campaign_id else None
        campaign_key = str(campaign_id) if campaign_id else ""

        key = (row.date, channel_id, campaign_key)
        if key not in totals:
            totals[key] = {
                "date": row.date,
                "date_key": date_key(row.date),
                "channel_id": channel_id,
                "campaign_id": campaign_id,
                "campaign_key": campaign_key,
                "spend": ZERO,
                "impressions": 0,
                "clicks": 0,
                "conversions": 0,
                "conversion_value": ZERO,
            }
        agg = totals[key]
        agg["spend"] += row.spend
        agg["impressions"] += row.impressions or 0
        agg["clicks"] += row.clicks or 0
        agg["conversions"] += row.conversions or 0
        agg["conversion_value"] += row.conversion_value or ZERO

    return [totals[key] for key in sorted(totals, key=lambda k: (k[0], str(k[1]), k[2]))]


TRAFFIC_MEASURES = ("sessions", "pdp_views", "add_to_cart", "checkouts", "purchases")


def aggregate_traffic(
    traffic_rows: Iterable[StgTraffic],
    channel_ids: Dict[ChannelSlug, uuid.UUID],
) -> List[Dict[str, Any]]:
    """Resolve analytics channel groups and sum them per (date, channel)"""
    totals: Dict[Tuple[date, ChannelSlug], Dict[str, int]] = defaultdict(lambda: dict.fromkeys(TRAFFIC_MEASURES, 0))
    for row in traffic_rows:
        agg = totals[(row.date, resolve(row.channel_raw, Vocabulary.TRAFFIC))]
        for measure in TRAFFIC_MEASURES:
            agg[measure] += getattr(row, measure) or 0

    return [
        {
            "date": day,
            "date_key": date_key(day),
            "channel_id": channel_ids[slug],
            **measures,
        }
        for (day, slug), measures in sorted(totals.items(), key=lambda item: (item[0][0], item[0][1].value))
    ]


async def build_marts(session: AsyncSession, settings: PipelineSettings) -> MartCounts:
    """
    Build dimensions and facts from the current staging tables.

    Args:
        session: Active session; the caller owns the transaction
        settings: Cost rates and dim_date seed range

    Returns:
        MartCounts with rows upserted per table
    """
    counts = MartCounts()
    logger.info("Starting mart build")

    channel_ids = await seed_channels(session)
    counts.channels = len(channel_ids)

    campaign_ids = await build_campaigns(session, channel_ids)
    counts.campaigns = len(campaign_ids)

    customer_ids = await build_customers(session)
    counts.customers = len(customer_ids)

    orders = list((await session.execute(select(StgOrder).order_by(StgOrder.order_id))).scalars())
    spend = list((await session.execute(select(StgSpend))).scalars())
    traffic = list((await session.execute(select(StgTraffic))).scalars())

    fact_dates = [o.order_date for o in orders] + [s.date for s in spend] + [t.date for t in traffic]
    counts.dates = await seed_dim_dates(session, settings, fact_dates)

    result = await session.execute(select(DimCampaign.source, DimCampaign.campaign_id, DimCampaign.campaign_name))
    names = {(source, campaign_id): name for source, campaign_id, name in result.all()}
    campaigns_by_name = campaign_name_index(campaign_ids, names)

    order_rows = [order_fact_row(o, channel_ids, campaigns_by_name, settings) for o in orders]
    spend_rows = aggregate_spend(spend, channel_ids, campaign_ids)
    traffic_rows = aggregate_traffic(traffic, channel_ids)

    # Stale facts are removed before the dimension rows they reference
    counts.pruned += await prune_missing(
        session, FactOrder, ["order_id"], [(row["order_id"],) for row in order_rows]
    )
    counts.pruned += await prune_missing(
        session,
        FactSpend,
        ["date", "channel_id", "campaign_key"],
        [(row["date"], row["channel_id"], row["campaign_key"]) for row in spend_rows],
    )
    counts.pruned += await prune_missing(
        session, FactTraffic, ["date", "channel_id"], [(row["date"], row["channel_id"]) for row in traffic_rows]
    )

    counts.orders = await upsert_many(session, FactOrder, order_rows, conflict_columns=["order_id"])
    counts.spend = await upsert_many(
        session, FactSpend, spend_rows, conflict_columns=["date", "channel_id", "campaign_key"]
    )
    counts.traffic = await upsert_many(session, FactTraffic, traffic_rows, conflict_columns=["date", "channel_id"])

    counts.pruned += await prune_missing(session, DimCustomer, ["customer_id"], [(c,) for c in customer_ids])
    counts.pruned += await prune_missing(session, DimCampaign, ["source", "campaign_id"], campaign_ids)

    logger.info(
        "Mart build complete",
        campaigns=counts.campaigns,
        customers=counts.customers,
        dates=counts.dates,
        orders=counts.orders,
        spend=counts.spend,
        traffic=counts.traffic,
        pruned=counts.pruned,
    )
    return counts
