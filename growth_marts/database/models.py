"""
Database Models - Raw Log, Staging and Star Schema

Three layers share one relational store:

Raw Log:
- RawEvent: untouched connector payloads keyed by (source, entity, external id)

Staging Tables:
- StgOrder, StgCustomer, StgSpend, StgTraffic: typed projections of raw payloads

Dimension Tables:
- DimChannel: closed set of canonical marketing channels
- DimDate: calendar dimension with continuous daily coverage
- DimCampaign: ad campaigns, created lazily from spend data
- DimCustomer: deduplicated customers with their acquisition cohort

Fact Tables:
- FactOrder: one completed order with cost allocation and contribution margin
- FactSpend: daily spend per channel/campaign
- FactTraffic: daily funnel counts per channel

Aggregates:
- Cohort: monthly acquisition cohort retention, LTV, CAC and payback
- JobRun: one record per pipeline run
"""

import datetime as dt
from decimal import Decimal
from enum import Enum
from typing import Optional
import uuid

from sqlalchemy import (
    JSON,
    Boolean,
    Date,
    DateTime,
    Enum as SQLEnum,
    Float,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    UniqueConstraint,
    Uuid,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all database models"""
    pass


# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")

Money = Numeric(12, 2)


# =============================================================================
# ENUMERATIONS
# =============================================================================

class ChannelSlug(str, Enum):
    """Canonical marketing channel slugs shared by orders, spend and traffic"""
    META = "meta"
    GOOGLE = "google"
    EMAIL = "email"
    ORGANIC = "organic"
    AFFILIATE = "affiliate"
    DIRECT = "direct"
    OTHER = "other"

    @property
    def display_name(self) -> str:
        return CHANNEL_DISPLAY_NAMES[self]


CHANNEL_DISPLAY_NAMES = {
    ChannelSlug.META: "Meta Ads",
    ChannelSlug.GOOGLE: "Google Ads",
    ChannelSlug.EMAIL: "Email",
    ChannelSlug.ORGANIC: "Organic",
    ChannelSlug.AFFILIATE: "Affiliate",
    ChannelSlug.DIRECT: "Direct",
    ChannelSlug.OTHER: "Other",
}


class JobStatus(str, Enum):
    """Pipeline run status"""
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    RETRYING = "RETRYING"


def _enum_column(enum_cls: type) -> SQLEnum:
    """Persist enum values (not member names) as a portable VARCHAR"""
    return SQLEnum(
        enum_cls,
        native_enum=False,
        length=20,
        values_callable=lambda members: [m.value for m in members],
    )


# =============================================================================
# RAW LOG
# =============================================================================

class RawEvent(Base):
    """
    Raw Event Log

    Immutable by convention: re-capturing the same (source, entity, external_id)
    overwrites the payload in place instead of appending a duplicate.
    """
    __tablename__ = "raw_events"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    source: Mapped[str] = mapped_column(String(50), nullable=False)
    entity: Mapped[str] = mapped_column(String(50), nullable=False)
    external_id: Mapped[str] = mapped_column(String(255), nullable=False)
    cursor: Mapped[Optional[str]] = mapped_column(String(255))
    payload: Mapped[dict] = mapped_column(JSONType, nullable=False)
    ingested_at: Mapped[dt.datetime] = mapped_column(DateTime, server_default=func.now())
    fetched_at: Mapped[dt.datetime] = mapped_column(DateTime, server_default=func.now())

    __table_args__ = (
        UniqueConstraint("source", "entity", "external_id", name="uq_raw_events_key"),
        Index("ix_raw_events_source_entity", "source", "entity"),
    )


# =============================================================================
# STAGING TABLES
# =============================================================================

class StgOrder(Base):
    """Cleaned storefront order, one row per order id"""
    __tablename__ = "stg_orders"

    order_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    order_at: Mapped[dt.datetime] = mapped_column(DateTime, nullable=False)
    order_date: Mapped[dt.date] = mapped_column(Date, nullable=False)
    customer_id: Mapped[Optional[str]] = mapped_column(String(64))
    email: Mapped[Optional[str]] = mapped_column(String(255))

    revenue_gross: Mapped[Decimal] = mapped_column(Money, nullable=False)
    discounts: Mapped[Decimal] = mapped_column(Money, default=0)
    refunds: Mapped[Decimal] = mapped_column(Money, default=0)
    revenue_net: Mapped[Decimal] = mapped_column(Money, nullable=False)
    cogs_estimate: Mapped[Decimal] = mapped_column(Money, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), default="USD")

    # Attribution inputs
    source_name: Mapped[Optional[str]] = mapped_column(String(100))
    landing_site: Mapped[Optional[str]] = mapped_column(String(2000))
    referring_site: Mapped[Optional[str]] = mapped_column(String(2000))
    utm_source: Mapped[Optional[str]] = mapped_column(String(100))
    utm_medium: Mapped[Optional[str]] = mapped_column(String(100))
    utm_campaign: Mapped[Optional[str]] = mapped_column(String(200))
    channel_label: Mapped[str] = mapped_column(String(200), nullable=False)
    channel: Mapped[ChannelSlug] = mapped_column(_enum_column(ChannelSlug), nullable=False)

    category: Mapped[Optional[str]] = mapped_column(String(100))
    region: Mapped[Optional[str]] = mapped_column(String(50))
    line_item_count: Mapped[int] = mapped_column(Integer, default=0)
    is_new_customer: Mapped[bool] = mapped_column(Boolean, default=False)

    __table_args__ = (
        Index("ix_stg_orders_customer", "customer_id"),
    )


class StgCustomer(Base):
    """Deduplicated customer with lifetime totals accumulated from orders"""
    __tablename__ = "stg_customers"

    customer_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    email: Mapped[Optional[str]] = mapped_column(String(255))
    first_order_at: Mapped[Optional[dt.datetime]] = mapped_column(DateTime)
    acquisition_channel: Mapped[Optional[ChannelSlug]] = mapped_column(_enum_column(ChannelSlug))
    region: Mapped[Optional[str]] = mapped_column(String(50))
    total_orders: Mapped[int] = mapped_column(Integer, default=0)
    total_revenue: Mapped[Decimal] = mapped_column(Money, default=0)


class StgSpend(Base):
    """Daily ad spend per source campaign"""
    __tablename__ = "stg_spend"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    date: Mapped[dt.date] = mapped_column(Date, nullable=False)
    source: Mapped[str] = mapped_column(String(50), nullable=False)
    campaign_id: Mapped[str] = mapped_column(String(100), nullable=False)
    campaign_name: Mapped[str] = mapped_column(String(200), nullable=False)
    spend: Mapped[Decimal] = mapped_column(Money, nullable=False)
    impressions: Mapped[int] = mapped_column(Integer, default=0)
    clicks: Mapped[int] = mapped_column(Integer, default=0)
    conversions: Mapped[int] = mapped_column(Integer, default=0)
    conversion_value: Mapped[Decimal] = mapped_column(Money, default=0)

    __table_args__ = (
        UniqueConstraint("date", "source", "campaign_id", name="uq_stg_spend_key"),
    )


class StgTraffic(Base):
    """Daily funnel counts per analytics channel group"""
    __tablename__ = "stg_traffic"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    date: Mapped[dt.date] = mapped_column(Date, nullable=False)
    source: Mapped[str] = mapped_column(String(50), nullable=False)
    channel_raw: Mapped[str] = mapped_column(String(100), nullable=False)
    sessions: Mapped[int] = mapped_column(Integer, default=0)
    pdp_views: Mapped[int] = mapped_column(Integer, default=0)
    add_to_cart: Mapped[int] = mapped_column(Integer, default=0)
    checkouts: Mapped[int] = mapped_column(Integer, default=0)
    purchases: Mapped[int] = mapped_column(Integer, default=0)

    __table_args__ = (
        UniqueConstraint("date", "source", "channel_raw", name="uq_stg_traffic_key"),
    )


# =============================================================================
# DIMENSION TABLES
# =============================================================================

class DimChannel(Base):
    """Canonical channel dimension, seeded from ChannelSlug"""
    __tablename__ = "dim_channel"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    slug: Mapped[ChannelSlug] = mapped_column(_enum_column(ChannelSlug), unique=True, nullable=False)
    name: Mapped[str] = mapped_column(String(100), nullable=False)


class DimDate(Base):
    """
    Date Dimension Table

    Calendar dimension for time-based analytics. Coverage must be continuous
    between its first and last day.
    """
    __tablename__ = "dim_date"

    date_key: Mapped[int] = mapped_column(Integer, primary_key=True)  # YYYYMMDD format
    full_date: Mapped[dt.date] = mapped_column(Date, unique=True, nullable=False)
    day_of_week: Mapped[int] = mapped_column(Integer, nullable=False)  # 0=Monday
    day_name: Mapped[str] = mapped_column(String(10), nullable=False)
    week_of_year: Mapped[int] = mapped_column(Integer, nullable=False)
    month: Mapped[int] = mapped_column(Integer, nullable=False)
    month_name: Mapped[str] = mapped_column(String(10), nullable=False)
    quarter: Mapped[int] = mapped_column(Integer, nullable=False)
    year: Mapped[int] = mapped_column(Integer, nullable=False)
    is_weekend: Mapped[bool] = mapped_column(Boolean, default=False)

    __table_args__ = (
        Index("ix_dim_date_year_month", "year", "month"),
    )


class DimCampaign(Base):
    """
    Marketing Campaign Dimension Table

    Created the first time spend data references a (source, campaign_id).
    """
    __tablename__ = "dim_campaign"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    source: Mapped[str] = mapped_column(String(50), nullable=False)
    campaign_id: Mapped[str] = mapped_column(String(100), nullable=False)
    campaign_name: Mapped[str] = mapped_column(String(200), nullable=False)
    channel_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("dim_channel.id"), nullable=False)

    __table_args__ = (
        UniqueConstraint("source", "campaign_id", name="uq_dim_campaign_key"),
        Index("ix_dim_campaign_name", "source", "campaign_name"),
    )


class DimCustomer(Base):
    """
    Customer Dimension Table

    One row per real customer. The cohort month is derived from the first
    order and never diverges from it.
    """
    __tablename__ = "dim_customer"

    customer_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    email: Mapped[Optional[str]] = mapped_column(String(255))
    first_order_at: Mapped[Optional[dt.datetime]] = mapped_column(DateTime)
    first_order_date: Mapped[Optional[dt.date]] = mapped_column(Date)
    acquisition_channel: Mapped[Optional[ChannelSlug]] = mapped_column(_enum_column(ChannelSlug))
    cohort_month: Mapped[Optional[str]] = mapped_column(String(7))  # YYYY-MM
    region: Mapped[Optional[str]] = mapped_column(String(50))
    total_orders: Mapped[int] = mapped_column(Integer, default=0)
    total_revenue: Mapped[Decimal] = mapped_column(Money, default=0)

    __table_args__ = (
        Index("ix_dim_customer_cohort", "cohort_month"),
    )


# =============================================================================
# FACT TABLES
# =============================================================================

class FactOrder(Base):
    """
    Order Fact Table

    Grain: one completed order. Cost allocation and contribution margin are
    recomputed from staging inputs on every build.
    """
    __tablename__ = "fact_orders"

    order_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    order_at: Mapped[dt.datetime] = mapped_column(DateTime, nullable=False)
    order_date: Mapped[dt.date] = mapped_column(Date, nullable=False)
    date_key: Mapped[int] = mapped_column(Integer, ForeignKey("dim_date.date_key"), nullable=False)
    customer_id: Mapped[Optional[str]] = mapped_column(String(64), ForeignKey("dim_customer.customer_id"))

    # Measures
    revenue_gross: Mapped[Decimal] = mapped_column(Money, nullable=False)
    discounts: Mapped[Decimal] = mapped_column(Money, default=0)
    refunds: Mapped[Decimal] = mapped_column(Money, default=0)
    revenue_net: Mapped[Decimal] = mapped_column(Money, nullable=False)

    # Cost allocation
    cogs: Mapped[Decimal] = mapped_column(Money, nullable=False)
    shipping_cost: Mapped[Decimal] = mapped_column(Money, nullable=False)
    ops_cost: Mapped[Decimal] = mapped_column(Money, nullable=False)
    contribution_margin: Mapped[Decimal] = mapped_column(Money, nullable=False)

    channel_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("dim_channel.id"), nullable=False)
    campaign_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, ForeignKey("dim_campaign.id"))

    category: Mapped[Optional[str]] = mapped_column(String(100))
    region: Mapped[Optional[str]] = mapped_column(String(50))
    is_new_customer: Mapped[bool] = mapped_column(Boolean, default=False)

    __table_args__ = (
        Index("ix_fact_orders_customer", "customer_id"),
        Index("ix_fact_orders_date", "order_date"),
        Index("ix_fact_orders_channel", "channel_id"),
    )


class FactSpend(Base):
    """
    Spend Fact Table

    Grain: one day per channel per campaign. ``campaign_key`` mirrors
    ``campaign_id`` as text ("" when absent) so the natural key stays unique
    even without a campaign.
    """
    __tablename__ = "fact_spend"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    date: Mapped[dt.date] = mapped_column(Date, nullable=False)
    date_key: Mapped[int] = mapped_column(Integer, ForeignKey("dim_date.date_key"), nullable=False)
    channel_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("dim_channel.id"), nullable=False)
    campaign_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, ForeignKey("dim_campaign.id"))
    campaign_key: Mapped[str] = mapped_column(String(64), nullable=False, default="")

    spend: Mapped[Decimal] = mapped_column(Money, nullable=False)
    impressions: Mapped[int] = mapped_column(Integer, default=0)
    clicks: Mapped[int] = mapped_column(Integer, default=0)
    conversions: Mapped[int] = mapped_column(Integer, default=0)
    conversion_value: Mapped[Decimal] = mapped_column(Money, default=0)

    __table_args__ = (
        UniqueConstraint("date", "channel_id", "campaign_key", name="uq_fact_spend_key"),
        Index("ix_fact_spend_date", "date"),
    )


class FactTraffic(Base):
    """
    Traffic Fact Table

    Grain: one day per canonical channel, summed over every analytics channel
    group that resolves to it.
    """
    __tablename__ = "fact_traffic"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    date: Mapped[dt.date] = mapped_column(Date, nullable=False)
    date_key: Mapped[int] = mapped_column(Integer, ForeignKey("dim_date.date_key"), nullable=False)
    channel_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("dim_channel.id"), nullable=False)

    sessions: Mapped[int] = mapped_column(Integer, default=0)
    pdp_views: Mapped[int] = mapped_column(Integer, default=0)
    add_to_cart: Mapped[int] = mapped_column(Integer, default=0)
    checkouts: Mapped[int] = mapped_column(Integer, default=0)
    purchases: Mapped[int] = mapped_column(Integer, default=0)

    __table_args__ = (
        UniqueConstraint("date", "channel_id", name="uq_fact_traffic_key"),
    )


# =============================================================================
# AGGREGATES
# =============================================================================

class Cohort(Base):
    """
    Monthly Acquisition Cohort

    Fully recomputed by every cohort-engine pass.
    """
    __tablename__ = "cohorts"

    cohort_month: Mapped[str] = mapped_column(String(7), primary_key=True)
    cohort_size: Mapped[int] = mapped_column(Integer, nullable=False)

    d7_retention: Mapped[float] = mapped_column(Float, default=0)
    d30_retention: Mapped[float] = mapped_column(Float, default=0)
    d60_retention: Mapped[float] = mapped_column(Float, default=0)
    d90_retention: Mapped[float] = mapped_column(Float, default=0)

    ltv30: Mapped[Decimal] = mapped_column(Money, default=0)
    ltv90: Mapped[Decimal] = mapped_column(Money, default=0)
    ltv180: Mapped[Decimal] = mapped_column(Money, default=0)

    avg_cac: Mapped[Decimal] = mapped_column(Money, default=0)
    payback_days: Mapped[Optional[int]] = mapped_column(Integer)


class JobRun(Base):
    """One pipeline run, as shown on the operational dashboard"""
    __tablename__ = "job_runs"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    job_name: Mapped[str] = mapped_column(String(100), nullable=False)
    status: Mapped[JobStatus] = mapped_column(_enum_column(JobStatus), default=JobStatus.PENDING, nullable=False)
    started_at: Mapped[Optional[dt.datetime]] = mapped_column(DateTime)
    finished_at: Mapped[Optional[dt.datetime]] = mapped_column(DateTime)
    rows_loaded: Mapped[int] = mapped_column(Integer, default=0)
    duration_ms: Mapped[Optional[int]] = mapped_column(Integer)
    error_detail: Mapped[Optional[dict]] = mapped_column(JSONType)

    __table_args__ = (
        Index("ix_job_runs_name_started", "job_name", "started_at"),
    )
