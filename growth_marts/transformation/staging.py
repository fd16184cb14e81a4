"""
Staging Normalizer

Projects raw connector payloads into typed staging tables:

- shopify/orders                  -> stg_orders
- shopify/customers (+ order ids) -> stg_customers
- meta/insights                   -> stg_spend
- google_ads/campaign_performance -> stg_spend
- ga4/traffic                     -> stg_traffic

Malformed records are skipped and logged, never fatal to the batch. Every
write is an upsert on the staging natural key, and rows no longer produced
by the current raw log are deleted, so each pass rebuilds staging from the
log as it stands.
"""

from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, NamedTuple, Optional, Tuple

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from growth_marts.config.settings import PipelineSettings
from growth_marts.database.models import (
    ChannelSlug,
    RawEvent,
    StgCustomer,
    StgOrder,
    StgSpend,
    StgTraffic,
)
from growth_marts.database.upsert import prune_missing, upsert_many
from .channels import SEARCH_ENGINES, Vocabulary, resolve
from .cleaners import (
    ZERO,
    MalformedRecord,
    clean_str,
    parse_count,
    parse_day,
    parse_money,
    parse_timestamp,
    quantize_money,
    query_params,
    referrer_host,
    strip_gid,
)

logger = structlog.get_logger(__name__)

MICROS = Decimal(1_000_000)

# Storefront source names that say nothing about marketing
NON_MARKETING_SOURCE_NAMES = ("", "web", "pos", "shopify_draft_order", "iphone", "android", "checkout_next")

SOCIAL_REFERRERS = {
    "facebook.com": "facebook",
    "fb.com": "facebook",
    "instagram.com": "instagram",
    "tiktok.com": "tiktok",
    "pinterest.com": "pinterest",
    "twitter.com": "twitter",
    "x.com": "twitter",
    "t.co": "twitter",
}

EMAIL_REFERRERS = {
    "klaviyo.com": "klaviyo",
    "klclick.com": "klaviyo",
    "mailchimp.com": "mailchimp",
    "list-manage.com": "mailchimp",
    "omnisend.com": "omnisend",
}

PURCHASE_ACTIONS = ("purchase", "offsite_conversion.fb_pixel_purchase", "omni_purchase")


@dataclass
class StagingCounts:
    """Rows normalized per staging table, plus skipped raw records per entity"""
    orders: int = 0
    customers: int = 0
    spend: int = 0
    traffic: int = 0
    pruned: int = 0
    skipped: Dict[str, int] = field(default_factory=dict)

    @property
    def total(self) -> int:
        return self.orders + self.customers + self.spend + self.traffic

    @property
    def total_skipped(self) -> int:
        return sum(self.skipped.values())


class OrderAttribution(NamedTuple):
    """Channel evidence extracted from one order payload"""
    label: str
    channel: ChannelSlug
    utm_source: Optional[str] = None
    utm_medium: Optional[str] = None
    utm_campaign: Optional[str] = None


# =============================================================================
# ATTRIBUTION
# =============================================================================

def _host_in(host: str, domains: Dict[str, str]) -> Optional[str]:
    for domain, name in domains.items():
        if host == domain or host.endswith("." + domain):
            return name
    return None


def _search_engine(host: str) -> Optional[str]:
    labels = host.split(".")
    for engine in SEARCH_ENGINES:
        if engine in labels:
            return engine
    return None


def _journey_label(payload: Dict[str, Any]) -> Tuple[Optional[str], Optional[str]]:
    """Label and campaign from the storefront's customer-journey summary"""
    journey = payload.get("customerJourneySummary")
    if not isinstance(journey, dict):
        return None, None

    visit = journey.get("lastVisit") or journey.get("firstVisit")
    if not isinstance(visit, dict):
        return None, None

    utm = visit.get("utmParameters")
    if isinstance(utm, dict) and clean_str(utm.get("source")):
        source = clean_str(utm.get("source")).lower()
        medium = (clean_str(utm.get("medium")) or "").lower()
        return f"{source}/{medium}", clean_str(utm.get("campaign"))

    source = (clean_str(visit.get("source")) or "").lower()
    source_type = (clean_str(visit.get("sourceType")) or "").lower()
    if source_type == "direct":
        return "direct", None
    if not source:
        return None, None
    if source_type == "search":
        # Ads auto-tagging carries no UTM medium, organic visits say so explicitly
        return (f"{source}/cpc" if source == "google" else f"{source}/organic"), None
    return f"{source}/{source_type}", None


def extract_order_channel(payload: Dict[str, Any]) -> OrderAttribution:
    """
    Derive the channel label for an order.

    Precedence: explicit UTM, ad click ids, customer-journey summary, social or
    email referrer / marketing source name, search-engine referrer, direct.
    The resulting label is resolved in the ORDER vocabulary, so the chain
    always ends in a canonical slug.
    """
    params = query_params(clean_str(payload.get("landing_site")))
    utm_source = clean_str(params.get("utm_source"))
    utm_medium = clean_str(params.get("utm_medium"))
    utm_campaign = clean_str(params.get("utm_campaign"))

    label: Optional[str] = None
    if utm_source:
        label = f"{utm_source.lower()}/{(utm_medium or '').lower()}"
    elif params.get("gclid"):
        label = "google/cpc"
    elif params.get("fbclid"):
        label = "facebook/cpc"

    if label is None:
        label, journey_campaign = _journey_label(payload)
        utm_campaign = utm_campaign or journey_campaign

    if label is None:
        host = referrer_host(clean_str(payload.get("referring_site")))
        source_name = (clean_str(payload.get("source_name")) or "").lower()

        social = _host_in(host, SOCIAL_REFERRERS)
        email = _host_in(host, EMAIL_REFERRERS)
        engine = _search_engine(host)
        if social:
            label = f"{social}/social"
        elif email:
            label = f"{email}/email"
        elif source_name not in NON_MARKETING_SOURCE_NAMES and not source_name.isdigit():
            label = source_name
        elif engine:
            label = f"{engine}/organic"
        else:
            label = "direct"

    return OrderAttribution(
        label=label,
        channel=resolve(label, Vocabulary.ORDER),
        utm_source=utm_source,
        utm_medium=utm_medium,
        utm_campaign=utm_campaign,
    )


# =============================================================================
# ORDER PARSING
# =============================================================================

def estimate_cogs(
    line_items: List[Dict[str, Any]],
    revenue_gross: Decimal,
    settings: PipelineSettings,
) -> Decimal:
    """
    Estimated cost of goods: unit price x quantity x (1 - category margin)
    per line item, or gross x (1 - default margin) without line items.
    """
    if not line_items:
        return quantize_money(revenue_gross * (1 - Decimal(str(settings.default_margin))))

    cost = ZERO
    for item in line_items:
        price = parse_money(item.get("price"), "line_items.price")
        raw_qty = item.get("quantity")
        quantity = 1 if raw_qty is None or raw_qty == "" else parse_count(raw_qty, "line_items.quantity")
        margin = Decimal(str(settings.margin_for(item.get("product_type"))))
        cost += price * quantity * (1 - margin)
    return quantize_money(cost)


def _tags(payload: Dict[str, Any]) -> List[str]:
    tags = payload.get("tags") or []
    if isinstance(tags, str):
        tags = tags.split(",")
    return [str(t).strip().lower() for t in tags]


def parse_order(payload: Dict[str, Any], settings: PipelineSettings) -> Dict[str, Any]:
    """
    One Shopify order payload -> stg_orders row (without ``is_new_customer``).

    Raises:
        MalformedRecord: missing id/timestamp/total or an unparseable amount
    """
    order_id = clean_str(payload.get("order_number")) or strip_gid(clean_str(payload.get("id")))
    if not order_id:
        raise MalformedRecord("id", payload.get("id"), "missing")

    order_at = parse_timestamp(payload.get("created_at"), "created_at")
    gross = parse_money(payload.get("total_price"), "total_price", required=True)
    discounts = parse_money(payload.get("total_discounts"), "total_discounts")
    refunds = parse_money(payload.get("total_refunds"), "total_refunds")
    net = max(ZERO, gross - discounts - refunds)

    line_items = payload.get("line_items")
    if not isinstance(line_items, list):
        line_items = []
    line_items = [item for item in line_items if isinstance(item, dict)]
    category = next((clean_str(i.get("product_type")) for i in line_items if clean_str(i.get("product_type"))), None)

    customer = payload.get("customer")
    if not isinstance(customer, dict):
        customer = {}
    address = payload.get("shipping_address")
    if not isinstance(address, dict):
        address = {}
    email = clean_str(customer.get("email") or payload.get("email"), 255)

    attribution = extract_order_channel(payload)

    return {
        "order_id": order_id,
        "order_at": order_at,
        "order_date": order_at.date(),
        "customer_id": strip_gid(clean_str(customer.get("id") or payload.get("customer_id"))),
        "email": email.lower() if email else None,
        "revenue_gross": quantize_money(gross),
        "discounts": quantize_money(discounts),
        "refunds": quantize_money(refunds),
        "revenue_net": quantize_money(net),
        "cogs_estimate": estimate_cogs(line_items, gross, settings),
        "currency": (clean_str(payload.get("currency"), 3) or "USD").upper(),
        "source_name": clean_str(payload.get("source_name"), 100),
        "landing_site": clean_str(payload.get("landing_site"), 2000),
        "referring_site": clean_str(payload.get("referring_site"), 2000),
        "utm_source": clean_str(attribution.utm_source, 100),
        "utm_medium": clean_str(attribution.utm_medium, 100),
        "utm_campaign": clean_str(attribution.utm_campaign, 200),
        "channel_label": attribution.label[:200],
        "channel": attribution.channel,
        "category": clean_str(category, 100),
        "region": clean_str(address.get("province_code"), 50),
        "line_item_count": len(line_items),
        "is_new_customer": "new_customer" in _tags(payload),
    }


def mark_new_customers(orders: List[Dict[str, Any]]) -> None:
    """
    Flag first purchases in place.

    An order is new when its timestamp is not after the customer's earliest
    known order. Guest orders keep the storefront's ``new_customer`` tag.
    """
    first_seen: Dict[str, datetime] = {}
    for order in orders:
        customer_id = order["customer_id"]
        if customer_id and (customer_id not in first_seen or order["order_at"] < first_seen[customer_id]):
            first_seen[customer_id] = order["order_at"]

    for order in orders:
        customer_id = order["customer_id"]
        if customer_id:
            order["is_new_customer"] = order["order_at"] <= first_seen[customer_id]


# =============================================================================
# CUSTOMERS
# =============================================================================

def parse_customer(payload: Dict[str, Any], external_id: str) -> Dict[str, Any]:
    customer_id = strip_gid(clean_str(payload.get("id"))) or strip_gid(external_id)
    if not customer_id:
        raise MalformedRecord("id", payload.get("id"), "missing")

    created_at = payload.get("created_at")
    address = payload.get("default_address")
    if not isinstance(address, dict):
        address = {}
    email = clean_str(payload.get("email"), 255)

    return {
        "customer_id": customer_id,
        "email": email.lower() if email else None,
        "created_at": parse_timestamp(created_at, "created_at") if created_at else None,
        "region": clean_str(address.get("province_code"), 50),
        "orders_count": parse_count(payload.get("orders_count"), "orders_count"),
        "total_spent": quantize_money(parse_money(payload.get("total_spent"), "total_spent")),
    }


def build_customer_rows(
    customer_records: List[Dict[str, Any]],
    orders: List[Dict[str, Any]],
) -> List[Dict[str, Any]]:
    """
    Merge customer records with the customers seen on orders.

    Order history wins: first order, acquisition channel and lifetime totals
    come from staged orders whenever the customer has any.
    """
    records = {c["customer_id"]: c for c in customer_records}

    history: Dict[str, List[Dict[str, Any]]] = defaultdict(list)
    for order in orders:
        if order["customer_id"]:
            history[order["customer_id"]].append(order)

    rows = []
    for customer_id in sorted(set(records) | set(history)):
        record = records.get(customer_id, {})
        customer_orders = sorted(history.get(customer_id, []), key=lambda o: (o["order_at"], o["order_id"]))

        if customer_orders:
            first = customer_orders[0]
            rows.append({
                "customer_id": customer_id,
                "email": record.get("email") or first["email"],
                "first_order_at": first["order_at"],
                "acquisition_channel": first["channel"],
                "region": record.get("region") or first["region"],
                "total_orders": len(customer_orders),
                "total_revenue": sum((o["revenue_net"] for o in customer_orders), ZERO),
            })
        else:
            rows.append({
                "customer_id": customer_id,
                "email": record.get("email"),
                "first_order_at": record.get("created_at"),
                "acquisition_channel": None,
                "region": record.get("region"),
                "total_orders": record.get("orders_count", 0),
                "total_revenue": record.get("total_spent", ZERO),
            })
    return rows


# =============================================================================
# SPEND / TRAFFIC
# =============================================================================

def _purchase_value(entries: Any) -> Any:
    if not isinstance(entries, list):
        return None
    for entry in entries:
        if isinstance(entry, dict) and entry.get("action_type") in PURCHASE_ACTIONS:
            return entry.get("value")
    return None


def parse_meta_insight(payload: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "date": parse_day(payload.get("date_start"), "date_start"),
        "source": "meta",
        "campaign_id": clean_str(payload.get("campaign_id"), 100) or "",
        "campaign_name": clean_str(payload.get("campaign_name"), 200) or "",
        "spend": quantize_money(parse_money(payload.get("spend"), "spend", required=True)),
        "impressions": parse_count(payload.get("impressions"), "impressions"),
        "clicks": parse_count(payload.get("clicks"), "clicks"),
        "conversions": parse_count(_purchase_value(payload.get("actions")), "actions.purchase"),
        "conversion_value": quantize_money(
            parse_money(_purchase_value(payload.get("action_values")), "action_values.purchase")
        ),
    }


def parse_google_ads_row(payload: Dict[str, Any]) -> Dict[str, Any]:
    campaign = payload.get("campaign") if isinstance(payload.get("campaign"), dict) else {}
    segments = payload.get("segments") if isinstance(payload.get("segments"), dict) else {}
    metrics = payload.get("metrics") if isinstance(payload.get("metrics"), dict) else {}

    if metrics.get("costMicros") in (None, ""):
        raise MalformedRecord("metrics.costMicros", None, "missing")

    return {
        "date": parse_day(segments.get("date"), "segments.date"),
        "source": "google_ads",
        "campaign_id": clean_str(campaign.get("id"), 100) or "",
        "campaign_name": clean_str(campaign.get("name"), 200) or "",
        "spend": quantize_money(Decimal(parse_count(metrics.get("costMicros"), "metrics.costMicros")) / MICROS),
        "impressions": parse_count(metrics.get("impressions"), "metrics.impressions"),
        "clicks": parse_count(metrics.get("clicks"), "metrics.clicks"),
        "conversions": parse_count(metrics.get("conversions"), "metrics.conversions"),
        "conversion_value": quantize_money(parse_money(metrics.get("conversionsValue"), "metrics.conversionsValue")),
    }


def parse_ga4_traffic(payload: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "date": parse_day(payload.get("date"), "date"),
        "source": "ga4",
        "channel_raw": clean_str(payload.get("sessionDefaultChannelGroup"), 100) or "Unassigned",
        "sessions": parse_count(payload.get("sessions"), "sessions"),
        "pdp_views": parse_count(payload.get("itemViews", payload.get("screenPageViews")), "itemViews"),
        "add_to_cart": parse_count(payload.get("addToCarts"), "addToCarts"),
        "checkouts": parse_count(payload.get("checkouts"), "checkouts"),
        "purchases": parse_count(payload.get("ecommercePurchases"), "ecommercePurchases"),
    }


SPEND_PARSERS = {
    ("meta", "insights"): parse_meta_insight,
    ("google_ads", "campaign_performance"): parse_google_ads_row,
}


# =============================================================================
# STAGE
# =============================================================================

async def _load_raw(session: AsyncSession, source: str, entity: str) -> List[RawEvent]:
    result = await session.execute(
        select(RawEvent)
        .where(RawEvent.source == source, RawEvent.entity == entity)
        .order_by(RawEvent.fetched_at, RawEvent.external_id)
    )
    return list(result.scalars().all())


def _skip(counts: StagingCounts, raw: RawEvent, error: MalformedRecord) -> None:
    key = f"{raw.source}/{raw.entity}"
    counts.skipped[key] = counts.skipped.get(key, 0) + 1
    logger.warning(
        "Skipping malformed record",
        source=raw.source,
        entity=raw.entity,
        external_id=raw.external_id,
        reason=str(error),
    )


async def normalize_staging(session: AsyncSession, settings: PipelineSettings) -> StagingCounts:
    """
    Normalize every raw record currently in the log into staging.

    Args:
        session: Active session; the caller owns the transaction
        settings: Cost constants used for COGS estimation

    Returns:
        StagingCounts with rows written and records skipped
    """
    counts = StagingCounts()
    logger.info("Starting staging normalization")

    # Orders (later captures of the same order id win)
    orders: Dict[str, Dict[str, Any]] = {}
    for raw in await _load_raw(session, "shopify", "orders"):
        try:
            order = parse_order(raw.payload, settings)
        except MalformedRecord as e:
            _skip(counts, raw, e)
            continue
        orders[order["order_id"]] = order

    order_rows = list(orders.values())
    mark_new_customers(order_rows)
    counts.pruned += await prune_missing(session, StgOrder, ["order_id"], [(order_id,) for order_id in orders])
    counts.orders = await upsert_many(session, StgOrder, order_rows, conflict_columns=["order_id"])

    # Customers
    customer_records = []
    for raw in await _load_raw(session, "shopify", "customers"):
        try:
            customer_records.append(parse_customer(raw.payload, raw.external_id))
        except MalformedRecord as e:
            _skip(counts, raw, e)

    customer_rows = build_customer_rows(customer_records, order_rows)
    counts.pruned += await prune_missing(
        session, StgCustomer, ["customer_id"], [(row["customer_id"],) for row in customer_rows]
    )
    counts.customers = await upsert_many(session, StgCustomer, customer_rows, conflict_columns=["customer_id"])

    # Spend
    spend: Dict[Tuple[Any, str, str], Dict[str, Any]] = {}
    for (source, entity), parser in SPEND_PARSERS.items():
        for raw in await _load_raw(session, source, entity):
            try:
                row = parser(raw.payload)
            except MalformedRecord as e:
                _skip(counts, raw, e)
                continue
            spend[(row["date"], row["source"], row["campaign_id"])] = row

    counts.pruned += await prune_missing(session, StgSpend, ["date", "source", "campaign_id"], spend)
    counts.spend = await upsert_many(
        session, StgSpend, list(spend.values()), conflict_columns=["date", "source", "campaign_id"]
    )

    # Traffic
    traffic: Dict[Tuple[Any, str, str], Dict[str, Any]] = {}
    for raw in await _load_raw(session, "ga4", "traffic"):
        try:
            row = parse_ga4_traffic(raw.payload)
        except MalformedRecord as e:
            _skip(counts, raw, e)
            continue
        traffic[(row["date"], row["source"], row["channel_raw"])] = row

    counts.pruned += await prune_missing(session, StgTraffic, ["date", "source", "channel_raw"], traffic)
    counts.traffic = await upsert_many(
        session, StgTraffic, list(traffic.values()), conflict_columns=["date", "source", "channel_raw"]
    )

    logger.info(
        "Staging normalization complete",
        orders=counts.orders,
        customers=counts.customers,
        spend=counts.spend,
        traffic=counts.traffic,
        pruned=counts.pruned,
        skipped=counts.skipped,
    )
    return counts
