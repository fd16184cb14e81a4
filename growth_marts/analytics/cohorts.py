"""
Cohort Engine

Monthly acquisition cohorts with retention, LTV, blended CAC and payback.

A customer belongs to the cohort of the month of their first order. For each
cohort:

- Retention at day N: distinct members with a repeat order within N days of
  their first order, over cohort size. Counting customers (not orders) keeps
  heavy repeat buyers from inflating the rate.
- LTV at day N: net revenue of member orders within N days of the member's
  first order, over cohort size.
- Average CAC: spend during the month over new-customer orders that month.
- Payback days: CAC over daily contribution (LTV30 x margin / 30).

Customers, orders and spend are fetched in one pass each and grouped in
memory with polars. Revenue is summed in integer cents.
"""

from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Any, Dict, List, Optional, Union

import polars as pl
import structlog
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from growth_marts.config.settings import PipelineSettings
from growth_marts.database.models import Cohort, DimCustomer, FactOrder, FactSpend
from growth_marts.database.upsert import upsert_many
from growth_marts.transformation.cleaners import to_cents

logger = structlog.get_logger(__name__)

Number = Union[Decimal, float, int]

CENTS = Decimal("0.01")
MICROS_PER_DAY = 86_400 * 1_000_000


class RetentionWindow(int, Enum):
    """Days after the first order within which a repeat order counts"""
    D7 = 7
    D30 = 30
    D60 = 60
    D90 = 90

    @property
    def column(self) -> str:
        return f"d{self.value}_retention"


class LtvWindow(int, Enum):
    """Days after the first order whose revenue counts toward LTV"""
    D30 = 30
    D90 = 90
    D180 = 180

    @property
    def column(self) -> str:
        return f"ltv{self.value}"


CUSTOMER_SCHEMA = {
    "customer_id": pl.Utf8,
    "first_order_at": pl.Datetime("us"),
    "cohort_month": pl.Utf8,
}

ORDER_SCHEMA = {
    "order_id": pl.Utf8,
    "customer_id": pl.Utf8,
    "order_at": pl.Datetime("us"),
    "order_date": pl.Date,
    "revenue_net_cents": pl.Int64,
    "is_new_customer": pl.Boolean,
}

SPEND_SCHEMA = {
    "date": pl.Date,
    "spend_cents": pl.Int64,
}

COHORT_SCHEMA = {
    "cohort_month": pl.Utf8,
    "cohort_size": pl.Int64,
    **{w.column: pl.Float64 for w in RetentionWindow},
    **{f"{w.column}_cents": pl.Int64 for w in LtvWindow},
    "avg_cac_cents": pl.Int64,
    "payback_days": pl.Int64,
}


# =============================================================================
# PURE HELPERS
# =============================================================================

def _dec(value: Number) -> Decimal:
    return value if isinstance(value, Decimal) else Decimal(str(value))


def from_cents(cents: int) -> Decimal:
    return (Decimal(cents) / 100).quantize(CENTS)


def retention_rate(retained: int, cohort_size: int) -> float:
    """Share of the cohort with a repeat order; 0 for an empty cohort"""
    if cohort_size <= 0:
        return 0.0
    return retained / cohort_size


def ltv_at_days(revenue_cents: int, cohort_size: int) -> Decimal:
    """Revenue per cohort member, in currency units rounded half-up to cents"""
    if cohort_size <= 0:
        return Decimal("0.00")
    return (Decimal(revenue_cents) / 100 / cohort_size).quantize(CENTS, rounding=ROUND_HALF_UP)


def blended_cac(spend: Number, new_customers: int) -> Decimal:
    """Spend per new customer; 0 when there is no spend or no new customer"""
    spend = _dec(spend)
    if spend <= 0 or new_customers <= 0:
        return Decimal("0.00")
    return (spend / new_customers).quantize(CENTS, rounding=ROUND_HALF_UP)


def payback_days(cac: Number, ltv30: Number, margin_rate: Number) -> Optional[int]:
    """
    Days of contribution needed to earn back acquisition cost.

    Returns None when any input is non-positive, since the ratio is then
    meaningless rather than zero or infinite.
    """
    cac, ltv30, margin_rate = _dec(cac), _dec(ltv30), _dec(margin_rate)
    if cac <= 0 or ltv30 <= 0 or margin_rate <= 0:
        return None
    daily_contribution = ltv30 * margin_rate / 30
    return int((cac / daily_contribution).quantize(Decimal(1), rounding=ROUND_HALF_UP))


# =============================================================================
# DATAFRAME PASS
# =============================================================================

def compute_cohorts(
    customers: pl.DataFrame,
    orders: pl.DataFrame,
    spend: pl.DataFrame,
    margin_rate: Number,
) -> pl.DataFrame:
    """
    Compute every cohort row from in-memory frames.

    Args:
        customers: CUSTOMER_SCHEMA; rows without a cohort month are ignored
        orders: ORDER_SCHEMA; guest orders only count toward CAC
        spend: SPEND_SCHEMA
        margin_rate: Contribution margin used for payback days

    Returns:
        One row per cohort month (COHORT_SCHEMA), money in integer cents
    """
    members = customers.filter(
        pl.col("cohort_month").is_not_null() & pl.col("first_order_at").is_not_null()
    )
    if members.is_empty():
        return pl.DataFrame(schema=COHORT_SCHEMA)

    sizes = members.group_by("cohort_month").agg(pl.len().cast(pl.Int64).alias("cohort_size"))

    member_orders = (
        orders.filter(pl.col("customer_id").is_not_null())
        .join(members, on="customer_id", how="inner")
        .sort(["customer_id", "order_at", "order_id"])
        .with_columns(
            ((pl.col("order_at") - pl.col("first_order_at")).dt.total_microseconds() // MICROS_PER_DAY)
            .alias("day_offset"),
            pl.int_range(pl.len()).over("customer_id").alias("order_rank"),
        )
    )

    # Every order after a customer's first is a repeat; count each customer once
    retained = (
        member_orders.filter(pl.col("order_rank") > 0)
        .group_by("cohort_month")
        .agg([
            pl.col("customer_id").filter(pl.col("day_offset") <= w.value).n_unique().alias(f"retained_{w.value}")
            for w in RetentionWindow
        ])
    )

    revenue = member_orders.group_by("cohort_month").agg([
        pl.col("revenue_net_cents").filter(pl.col("day_offset") <= w.value).sum().alias(f"revenue_{w.value}")
        for w in LtvWindow
    ])

    new_customers = (
        orders.filter(pl.col("is_new_customer"))
        .with_columns(pl.col("order_date").dt.strftime("%Y-%m").alias("cohort_month"))
        .group_by("cohort_month")
        .agg(pl.len().alias("new_customers"))
    )

    monthly_spend = (
        spend.with_columns(pl.col("date").dt.strftime("%Y-%m").alias("cohort_month"))
        .group_by("cohort_month")
        .agg(pl.col("spend_cents").sum())
    )

    frame = sizes
    for other in (retained, revenue, new_customers, monthly_spend):
        frame = frame.join(other, on="cohort_month", how="left")
    frame = frame.with_columns(pl.exclude("cohort_month").fill_null(0)).sort("cohort_month")

    rows: List[Dict[str, Any]] = []
    for row in frame.iter_rows(named=True):
        size = row["cohort_size"]
        ltv = {w: ltv_at_days(row[f"revenue_{w.value}"], size) for w in LtvWindow}
        cac = blended_cac(from_cents(row["spend_cents"]), row["new_customers"])

        rows.append({
            "cohort_month": row["cohort_month"],
            "cohort_size": size,
            **{w.column: retention_rate(row[f"retained_{w.value}"], size) for w in RetentionWindow},
            **{f"{w.column}_cents": to_cents(ltv[w]) for w in LtvWindow},
            "avg_cac_cents": to_cents(cac),
            "payback_days": payback_days(cac, ltv[LtvWindow.D30], margin_rate),
        })

    return pl.DataFrame(rows, schema=COHORT_SCHEMA)


# =============================================================================
# STAGE
# =============================================================================

async def load_frames(session: AsyncSession) -> Dict[str, pl.DataFrame]:
    """Bulk-fetch customers, orders and spend from the marts"""
    result = await session.execute(
        select(DimCustomer.customer_id, DimCustomer.first_order_at, DimCustomer.cohort_month)
    )
    customers = pl.DataFrame([tuple(r) for r in result.all()], schema=CUSTOMER_SCHEMA, orient="row")

    result = await session.execute(
        select(
            FactOrder.order_id,
            FactOrder.customer_id,
            FactOrder.order_at,
            FactOrder.order_date,
            FactOrder.revenue_net,
            FactOrder.is_new_customer,
        )
    )
    orders = pl.DataFrame(
        [(oid, cid, at, day, to_cents(net), bool(new)) for oid, cid, at, day, net, new in result.all()],
        schema=ORDER_SCHEMA,
        orient="row",
    )

    result = await session.execute(select(FactSpend.date, FactSpend.spend))
    spend = pl.DataFrame(
        [(day, to_cents(amount)) for day, amount in result.all()],
        schema=SPEND_SCHEMA,
        orient="row",
    )

    return {"customers": customers, "orders": orders, "spend": spend}


def cohort_records(frame: pl.DataFrame) -> List[Dict[str, Any]]:
    """Cohort frame -> cohorts table rows with Decimal money"""
    records = []
    for row in frame.iter_rows(named=True):
        record = {
            "cohort_month": row["cohort_month"],
            "cohort_size": row["cohort_size"],
            **{w.column: row[w.column] for w in RetentionWindow},
            **{w.column: from_cents(row[f"{w.column}_cents"]) for w in LtvWindow},
            "avg_cac": from_cents(row["avg_cac_cents"]),
            "payback_days": row["payback_days"],
        }
        records.append(record)
    return records


async def build_cohorts(session: AsyncSession, settings: PipelineSettings) -> int:
    """
    Recompute every cohort row from the marts.

    Months that no longer have any customers are removed.

    Returns:
        Number of cohort rows written
    """
    started = datetime.utcnow()
    frames = await load_frames(session)
    frame = compute_cohorts(
        frames["customers"],
        frames["orders"],
        frames["spend"],
        settings.payback_margin_rate,
    )
    records = cohort_records(frame)

    months = [r["cohort_month"] for r in records]
    stale = delete(Cohort)
    if months:
        stale = stale.where(Cohort.cohort_month.not_in(months))
    await session.execute(stale)

    written = await upsert_many(session, Cohort, records, conflict_columns=["cohort_month"])

    logger.info(
        "Cohorts built",
        cohorts=written,
        customers=frames["customers"].height,
        orders=frames["orders"].height,
        duration_ms=int((datetime.utcnow() - started).total_seconds() * 1000),
    )
    return written

