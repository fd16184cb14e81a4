"""
Synthetic Source Data Generator

Generates raw connector records in each source's native payload shape:
- Shopify customers and orders (UTM landing sites, journey summaries,
  line items, refunds and discounts)
- Meta Ads daily campaign insights
- Google Ads daily campaign performance
- GA4 daily traffic per channel group

Output is a list of ``{source, entity, externalId, cursor, payload}`` dicts,
ready for ``ingest_raw``. Generation is seeded and fully reproducible.
"""

from dataclasses import dataclass
from datetime import date, datetime, timedelta
from pathlib import Path
from typing import Any, Dict, List
import json

import numpy as np
from faker import Faker


# =============================================================================
# CONFIGURATION
# =============================================================================

CATEGORIES = ["apparel", "electronics", "beauty", "home", "food"]

ACQUISITION_CHANNELS = ["meta", "google", "organic", "email", "direct", "affiliate"]
ACQUISITION_WEIGHTS = [0.30, 0.25, 0.20, 0.10, 0.10, 0.05]

META_CAMPAIGNS = [
    ("meta_camp_001", "PROS_TOF_Broad"),
    ("meta_camp_002", "RET_BOF_DPA"),
    ("meta_camp_003", "PROS_MOF_Lookalike"),
    ("meta_camp_004", "BRAND_Awareness"),
]

GOOGLE_CAMPAIGNS = [
    ("gads_camp_001", "Brand_Search"),
    ("gads_camp_002", "NonBrand_Generic"),
    ("gads_camp_003", "Shopping_Smart"),
    ("gads_camp_004", "PMax_AllProducts"),
]

EMAIL_CAMPAIGNS = ["Welcome_Series", "Abandoned_Cart", "Weekly_Newsletter", "VIP_Offer"]

GA4_CHANNEL_GROUPS = ["Organic Search", "Paid Search", "Paid Social", "Email", "Direct", "Referral"]
GA4_CHANNEL_WEIGHTS = [0.30, 0.22, 0.20, 0.10, 0.12, 0.06]

REGIONS = ["CA", "NY", "TX", "FL", "WA", "IL", "MA", "CO", "GA", "OR"]


def _iso(ts: datetime) -> str:
    return ts.strftime("%Y-%m-%dT%H:%M:%S+00:00")


def _record(source: str, entity: str, external_id: str, cursor: str, payload: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "source": source,
        "entity": entity,
        "externalId": external_id,
        "cursor": cursor,
        "payload": payload,
    }


@dataclass
class DemoCustomer:
    customer_id: str
    email: str
    region: str
    channel: str
    first_order_at: datetime


# =============================================================================
# GENERATORS
# =============================================================================

class CustomerGenerator:
    """Storefront customers with an acquisition channel and first-order time"""

    def __init__(self, rng: np.random.Generator, fake: Faker):
        self.rng = rng
        self.fake = fake

    def generate(self, n: int, start: date, days: int) -> List[DemoCustomer]:
        channels = self.rng.choice(ACQUISITION_CHANNELS, size=n, p=ACQUISITION_WEIGHTS)
        offsets = self.rng.integers(0, days, size=n)
        hours = self.rng.integers(0, 24, size=n)
        regions = self.rng.choice(REGIONS, size=n)

        customers = []
        for i in range(n):
            first_order_at = datetime(start.year, start.month, start.day) + timedelta(
                days=int(offsets[i]), hours=int(hours[i])
            )
            customers.append(DemoCustomer(
                customer_id=f"{i + 1:06d}",
                email=self.fake.unique.email(),
                region=str(regions[i]),
                channel=str(channels[i]),
                first_order_at=first_order_at,
            ))
        return customers

    @staticmethod
    def to_records(customers: List[DemoCustomer], orders_per_customer: Dict[str, int]) -> List[Dict[str, Any]]:
        records = []
        for c in customers:
            created = _iso(c.first_order_at)
            records.append(_record("shopify", "customers", c.customer_id, created, {
                "id": f"gid://shopify/Customer/{c.customer_id}",
                "email": c.email,
                "created_at": created,
                "orders_count": orders_per_customer.get(c.customer_id, 0),
                "total_spent": "0.00",
                "default_address": {"province_code": c.region},
                "tags": "",
            }))
        return records


class OrderGenerator:
    """Shopify orders: a first order per customer plus geometric repeat purchases"""

    def __init__(self, rng: np.random.Generator, repeat_rate: float = 0.35):
        self.rng = rng
        self.repeat_rate = repeat_rate
        self._next_order = 1000

    def _attribution(self, channel: str) -> Dict[str, Any]:
        """Landing site, referrer and journey summary for an acquisition channel"""
        if channel == "meta":
            campaign = META_CAMPAIGNS[int(self.rng.integers(len(META_CAMPAIGNS)))][1]
            utm = ("facebook", "cpc", campaign)
            referrer, journey = "https://www.facebook.com/", ("facebook", "SOCIAL")
        elif channel == "google":
            campaign = GOOGLE_CAMPAIGNS[int(self.rng.integers(len(GOOGLE_CAMPAIGNS)))][1]
            utm = ("google", "cpc", campaign)
            referrer, journey = "https://www.google.com/", ("google", "SEARCH")
        elif channel == "email":
            utm = ("klaviyo", "email", EMAIL_CAMPAIGNS[int(self.rng.integers(len(EMAIL_CAMPAIGNS)))])
            referrer, journey = None, ("klaviyo", "EMAIL")
        elif channel == "affiliate":
            utm = ("affiliate", "referral", None)
            referrer, journey = None, ("affiliate", "REFERRAL")
        elif channel == "organic":
            return {
                "landing_site": "/",
                "referring_site": "https://www.google.com/",
                "customerJourneySummary": {
                    "lastVisit": {
                        "source": "google",
                        "sourceType": "SEARCH",
                        "utmParameters": {"source": "google", "medium": "organic", "campaign": None},
                    },
                },
            }
        else:
            return {"landing_site": "/", "referring_site": None, "customerJourneySummary": None}

        source, medium, campaign = utm
        query = f"utm_source={source}&utm_medium={medium}"
        if campaign:
            query += f"&utm_campaign={campaign}"
        visit = {
            "source": journey[0],
            "sourceType": journey[1],
            "utmParameters": {"source": source, "medium": medium, "campaign": campaign},
        }
        return {
            "landing_site": f"/?{query}",
            "referring_site": referrer,
            "customerJourneySummary": {"firstVisit": visit, "lastVisit": visit},
        }

    def _order(self, customer: DemoCustomer, ordered_at: datetime, channel: str, is_first: bool) -> Dict[str, Any]:
        self._next_order += 1
        order_number = self._next_order

        category = CATEGORIES[int(self.rng.integers(len(CATEGORIES)))]
        n_items = int(self.rng.integers(1, 5))
        prices = np.round(self.rng.uniform(15, 180, size=n_items), 2)
        quantities = self.rng.choice([1, 2, 3], size=n_items, p=[0.80, 0.15, 0.05])
        gross = round(float(np.sum(prices * quantities)), 2)

        discount = round(gross * float(self.rng.uniform(0.05, 0.20)), 2) if self.rng.random() < 0.25 else 0.0
        refund = round((gross - discount) * float(self.rng.uniform(0.3, 1.0)), 2) if self.rng.random() < 0.08 else 0.0

        payload = {
            "id": f"gid://shopify/Order/{order_number}",
            "order_number": order_number,
            "created_at": _iso(ordered_at),
            "customer": {"id": f"gid://shopify/Customer/{customer.customer_id}", "email": customer.email},
            "total_price": f"{gross:.2f}",
            "total_discounts": f"{discount:.2f}",
            "total_refunds": f"{refund:.2f}",
            "currency": "USD",
            "source_name": "web",
            "line_items": [
                {"price": f"{p:.2f}", "quantity": int(q), "product_type": category}
                for p, q in zip(prices, quantities)
            ],
            "shipping_address": {"province_code": customer.region},
            "tags": "new_customer" if is_first else "",
            **self._attribution(channel),
        }
        return _record("shopify", "orders", str(order_number), _iso(ordered_at), payload)

    def generate(self, customers: List[DemoCustomer], end: datetime) -> List[Dict[str, Any]]:
        records = []
        for customer in customers:
            records.append(self._order(customer, customer.first_order_at, customer.channel, is_first=True))

            ordered_at = customer.first_order_at
            while self.rng.random() < self.repeat_rate:
                ordered_at += timedelta(days=int(self.rng.integers(1, 60)), hours=int(self.rng.integers(0, 24)))
                if ordered_at > end:
                    break
                # Repeat purchases mostly come back through email or direct
                channel = str(self.rng.choice(["email", "direct", customer.channel], p=[0.4, 0.3, 0.3]))
                records.append(self._order(customer, ordered_at, channel, is_first=False))
        return records


class SpendGenerator:
    """Daily campaign spend for Meta and Google Ads"""

    def __init__(self, rng: np.random.Generator):
        self.rng = rng

    def meta_insights(self, start: date, days: int) -> List[Dict[str, Any]]:
        records = []
        for day in range(days):
            d = (start + timedelta(days=day)).isoformat()
            growth = 1 + (day / max(days, 1)) * 0.3
            for campaign_id, name in META_CAMPAIGNS:
                spend = round(float(self.rng.uniform(80, 300)) * growth, 2)
                impressions = int(spend / float(self.rng.uniform(8, 25)) * 1000)
                clicks = int(impressions * float(self.rng.uniform(0.008, 0.035)))
                cvr = self.rng.uniform(0.02, 0.06) if "RET" in name else self.rng.uniform(0.005, 0.02)
                conversions = int(round(clicks * float(cvr)))
                value = round(conversions * float(self.rng.uniform(60, 150)), 2)
                records.append(_record("meta", "insights", f"{campaign_id}_{d}", d, {
                    "campaign_id": campaign_id,
                    "campaign_name": name,
                    "date_start": d,
                    "date_stop": d,
                    "spend": f"{spend:.2f}",
                    "impressions": str(impressions),
                    "clicks": str(clicks),
                    "actions": [{"action_type": "purchase", "value": str(conversions)}],
                    "action_values": [{"action_type": "purchase", "value": f"{value:.2f}"}],
                }))
        return records

    def google_ads(self, start: date, days: int) -> List[Dict[str, Any]]:
        records = []
        for day in range(days):
            d = (start + timedelta(days=day)).isoformat()
            growth = 1 + (day / max(days, 1)) * 0.25
            for campaign_id, name in GOOGLE_CAMPAIGNS:
                spend = round(float(self.rng.uniform(60, 250)) * growth, 2)
                impressions = int(self.rng.integers(800, 15000))
                brand = "Brand" in name
                clicks = int(impressions * float(self.rng.uniform(0.05, 0.12) if brand else self.rng.uniform(0.015, 0.04)))
                conversions = int(round(clicks * float(self.rng.uniform(0.04, 0.08) if brand else self.rng.uniform(0.01, 0.03))))
                value = round(conversions * float(self.rng.uniform(70, 160)), 2)
                records.append(_record("google_ads", "campaign_performance", f"{campaign_id}_{d}", d, {
                    "campaign": {
                        "resourceName": f"customers/demo/campaigns/{campaign_id}",
                        "id": campaign_id,
                        "name": name,
                    },
                    "segments": {"date": d},
                    "metrics": {
                        "costMicros": str(int(round(spend * 1_000_000))),
                        "impressions": str(impressions),
                        "clicks": str(clicks),
                        "conversions": str(conversions),
                        "conversionsValue": f"{value:.2f}",
                    },
                }))
        return records


class TrafficGenerator:
    """GA4 sessions and funnel steps per day and channel group"""

    def __init__(self, rng: np.random.Generator):
        self.rng = rng

    def generate(self, start: date, days: int) -> List[Dict[str, Any]]:
        records = []
        for day in range(days):
            current = start + timedelta(days=day)
            d = current.isoformat()
            weekend = 0.85 if current.weekday() >= 5 else 1.0
            total = 1800 * (1 + (day / max(days, 1)) * 0.35) * weekend + float(self.rng.uniform(-200, 200))

            for group, weight in zip(GA4_CHANNEL_GROUPS, GA4_CHANNEL_WEIGHTS):
                sessions = max(10, int(total * weight + float(self.rng.uniform(-30, 30))))
                pdp_views = int(sessions * float(self.rng.uniform(0.55, 0.75)))
                add_to_cart = int(pdp_views * float(self.rng.uniform(0.15, 0.30)))
                checkouts = int(add_to_cart * float(self.rng.uniform(0.50, 0.75)))
                purchases = int(checkouts * float(self.rng.uniform(0.55, 0.80)))
                records.append(_record("ga4", "traffic", f"{d}_{group}", d, {
                    "date": d,
                    "sessionDefaultChannelGroup": group,
                    "sessions": str(sessions),
                    "itemViews": str(pdp_views),
                    "addToCarts": str(add_to_cart),
                    "checkouts": str(checkouts),
                    "ecommercePurchases": str(purchases),
                }))
        return records


# =============================================================================
# MAIN GENERATOR
# =============================================================================

class DataGenerator:
    """
    Raw-record generator for every connector.

    Example:
        records = DataGenerator(seed=7).generate_all(n_customers=200, days=60)
        await run_pipeline(db, records)
    """

    def __init__(self, seed: int = 42, start_date: date = date(2025, 1, 1)):
        self.seed = seed
        self.start_date = start_date

    def generate_all(self, n_customers: int = 500, days: int = 90) -> List[Dict[str, Any]]:
        """Generate a complete, internally consistent raw export"""
        rng = np.random.default_rng(self.seed)
        fake = Faker()
        fake.seed_instance(self.seed)

        end = datetime(self.start_date.year, self.start_date.month, self.start_date.day) + timedelta(days=days)

        customers = CustomerGenerator(rng, fake).generate(n_customers, self.start_date, days)
        orders = OrderGenerator(rng).generate(customers, end)

        orders_per_customer: Dict[str, int] = {}
        for order in orders:
            cid = order["payload"]["customer"]["id"].rsplit("/", 1)[-1]
            orders_per_customer[cid] = orders_per_customer.get(cid, 0) + 1

        spend = SpendGenerator(rng)
        return [
            *orders,
            *CustomerGenerator.to_records(customers, orders_per_customer),
            *spend.meta_insights(self.start_date, days),
            *spend.google_ads(self.start_date, days),
            *TrafficGenerator(rng).generate(self.start_date, days),
        ]

    @staticmethod
    def save(records: List[Dict[str, Any]], path: Path) -> Path:
        """Write records as a JSON array"""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(records, indent=2), encoding="utf-8")
        return path


def load_records(path: Path) -> List[Dict[str, Any]]:
    """Read a JSON array of raw records written by ``DataGenerator.save``"""
    with open(path, "r", encoding="utf-8") as fh:
        records = json.load(fh)
    if not isinstance(records, list):
        raise ValueError(f"{path} does not contain a JSON array of records")
    return records


def summarize(records: List[Dict[str, Any]]) -> Dict[str, int]:
    """Record counts per source/entity"""
    counts: Dict[str, int] = {}
    for record in records:
        key = f"{record['source']}/{record['entity']}"
        counts[key] = counts.get(key, 0) + 1
    return counts
