"""
Unit Tests - Staging Normalization
"""
from datetime import datetime
from decimal import Decimal

import pytest

from growth_marts.database.models import ChannelSlug
from growth_marts.transformation.cleaners import MalformedRecord
from growth_marts.transformation.staging import (
    build_customer_rows,
    estimate_cogs,
    extract_order_channel,
    mark_new_customers,
    parse_customer,
    parse_ga4_traffic,
    parse_google_ads_row,
    parse_meta_insight,
    parse_order,
)


def _order_payload(**overrides):
    payload = {
        "id": "gid://shopify/Order/9001",
        "order_number": 1001,
        "created_at": "2025-02-03T10:00:00Z",
        "customer": {"id": "gid://shopify/Customer/77", "email": "Buyer@Example.com"},
        "total_price": "200.00",
        "total_discounts": "20.00",
        "total_refunds": "0.00",
        "source_name": "web",
        "line_items": [{"price": "50.00", "quantity": 2, "product_type": "apparel"}],
        "shipping_address": {"province_code": "NY"},
    }
    payload.update(overrides)
    return payload


class TestOrderAttribution:
    """Channel evidence precedence on order payloads"""

    def test_utm_wins(self):
        attribution = extract_order_channel({
            "landing_site": "/?utm_source=google&utm_medium=cpc&utm_campaign=Brand_Search&fbclid=1",
            "referring_site": "https://facebook.com/",
        })
        assert attribution.label == "google/cpc"
        assert attribution.channel is ChannelSlug.GOOGLE
        assert attribution.utm_campaign == "Brand_Search"

    def test_click_ids(self):
        assert extract_order_channel({"landing_site": "/?gclid=abc"}).channel is ChannelSlug.GOOGLE
        assert extract_order_channel({"landing_site": "/?fbclid=abc"}).channel is ChannelSlug.META

    def test_journey_utm_parameters(self):
        attribution = extract_order_channel({
            "landing_site": "/",
            "customerJourneySummary": {
                "firstVisit": {"source": "google", "sourceType": "SEARCH"},
                "lastVisit": {
                    "source": "facebook",
                    "sourceType": "SOCIAL",
                    "utmParameters": {"source": "facebook", "medium": "cpc", "campaign": "RET_BOF_DPA"},
                },
            },
        })
        assert attribution.label == "facebook/cpc"
        assert attribution.channel is ChannelSlug.META
        assert attribution.utm_campaign == "RET_BOF_DPA"

    def test_journey_source_type(self):
        search = {"customerJourneySummary": {"lastVisit": {"source": "google", "sourceType": "SEARCH"}}}
        bing = {"customerJourneySummary": {"firstVisit": {"source": "bing", "sourceType": "SEARCH"}}}
        direct = {"customerJourneySummary": {"lastVisit": {"source": "", "sourceType": "DIRECT"}}}
        assert extract_order_channel(search).label == "google/cpc"
        assert extract_order_channel(bing).label == "bing/organic"
        assert extract_order_channel(direct).channel is ChannelSlug.DIRECT

    def test_social_referrer(self):
        attribution = extract_order_channel({"referring_site": "https://l.instagram.com/"})
        assert attribution.label == "instagram/social"
        assert attribution.channel is ChannelSlug.META

    def test_email_referrer(self):
        assert extract_order_channel({"referring_site": "https://trk.klaviyo.com/x"}).channel is ChannelSlug.EMAIL

    def test_marketing_source_name_used_as_label(self):
        attribution = extract_order_channel({"source_name": "affiliate", "referring_site": ""})
        assert attribution.label == "affiliate"
        assert attribution.channel is ChannelSlug.AFFILIATE

    def test_numeric_source_name_ignored(self):
        assert extract_order_channel({"source_name": "580111"}).label == "direct"

    def test_search_referrer_is_organic(self):
        attribution = extract_order_channel({"source_name": "web", "referring_site": "https://www.google.com/"})
        assert attribution.label == "google/organic"
        assert attribution.channel is ChannelSlug.ORGANIC

    def test_no_evidence_is_direct(self):
        attribution = extract_order_channel({"landing_site": "/", "source_name": "web"})
        assert attribution.label == "direct"
        assert attribution.channel is ChannelSlug.DIRECT


class TestParseOrder:
    """Order payload projection"""

    def test_amounts_and_ids(self, pipeline_settings):
        row = parse_order(_order_payload(), pipeline_settings)
        assert row["order_id"] == "1001"
        assert row["customer_id"] == "77"
        assert row["email"] == "buyer@example.com"
        assert row["revenue_gross"] == Decimal("200.00")
        assert row["revenue_net"] == Decimal("180.00")
        assert row["order_at"] == datetime(2025, 2, 3, 10, 0)
        assert row["category"] == "apparel"
        assert row["region"] == "NY"
        assert row["line_item_count"] == 1

    def test_order_id_falls_back_to_gid(self, pipeline_settings):
        row = parse_order(_order_payload(order_number=None), pipeline_settings)
        assert row["order_id"] == "9001"

    def test_net_floored_at_zero(self, pipeline_settings):
        row = parse_order(_order_payload(total_refunds="500.00"), pipeline_settings)
        assert row["revenue_net"] == Decimal("0.00")

    def test_net_never_exceeds_gross(self, pipeline_settings):
        row = parse_order(_order_payload(total_discounts="0", total_refunds=None), pipeline_settings)
        assert row["revenue_net"] <= row["revenue_gross"]

    @pytest.mark.parametrize(
        "overrides",
        [
            {"total_price": None},
            {"total_price": "-10.00"},
            {"total_price": "lots"},
            {"created_at": "not a date"},
            {"id": None, "order_number": None},
            {"total_discounts": "-1"},
        ],
    )
    def test_malformed(self, pipeline_settings, overrides):
        with pytest.raises(MalformedRecord):
            parse_order(_order_payload(**overrides), pipeline_settings)

    def test_guest_keeps_new_customer_tag(self, pipeline_settings):
        row = parse_order(_order_payload(customer=None, tags="vip, new_customer"), pipeline_settings)
        assert row["customer_id"] is None
        assert row["is_new_customer"] is True


class TestCogs:
    """COGS estimation from line items"""

    def test_category_margin(self, pipeline_settings):
        # apparel margin .55 -> cost 45% of 2 x 50
        cogs = estimate_cogs([{"price": "50.00", "quantity": 2, "product_type": "apparel"}], Decimal("100"), pipeline_settings)
        assert cogs == Decimal("45.00")

    def test_unknown_category_uses_default(self, pipeline_settings):
        cogs = estimate_cogs([{"price": "100.00", "product_type": "garden"}], Decimal("100"), pipeline_settings)
        assert cogs == Decimal("55.00")

    def test_quantity_defaults_to_one(self, pipeline_settings):
        cogs = estimate_cogs([{"price": "10.00", "product_type": "electronics"}], Decimal("10"), pipeline_settings)
        assert cogs == Decimal("7.00")

    def test_no_line_items_uses_gross(self, pipeline_settings):
        assert estimate_cogs([], Decimal("200.00"), pipeline_settings) == Decimal("110.00")


class TestNewCustomers:

    def test_first_order_only(self):
        orders = [
            {"order_id": "2", "customer_id": "c1", "order_at": datetime(2025, 1, 5), "is_new_customer": True},
            {"order_id": "1", "customer_id": "c1", "order_at": datetime(2025, 1, 1), "is_new_customer": False},
            {"order_id": "3", "customer_id": None, "order_at": datetime(2025, 1, 2), "is_new_customer": True},
            {"order_id": "4", "customer_id": None, "order_at": datetime(2025, 1, 3), "is_new_customer": False},
        ]
        mark_new_customers(orders)
        flags = {o["order_id"]: o["is_new_customer"] for o in orders}
        assert flags == {"1": True, "2": False, "3": True, "4": False}


class TestCustomers:

    def test_order_history_wins(self, pipeline_settings):
        first = parse_order(_order_payload(order_number=1, created_at="2025-01-10T00:00:00Z"), pipeline_settings)
        second = parse_order(
            _order_payload(
                order_number=2,
                created_at="2025-02-10T00:00:00Z",
                landing_site="/?utm_source=klaviyo&utm_medium=email",
            ),
            pipeline_settings,
        )
        record = parse_customer(
            {"id": "gid://shopify/Customer/77", "created_at": "2024-12-01T00:00:00Z", "orders_count": 9, "total_spent": "999.00"},
            "77",
        )

        rows = build_customer_rows([record], [second, first])
        assert len(rows) == 1
        row = rows[0]
        assert row["first_order_at"] == datetime(2025, 1, 10)
        assert row["acquisition_channel"] is ChannelSlug.DIRECT
        assert row["total_orders"] == 2
        assert row["total_revenue"] == Decimal("360.00")

    def test_customer_without_orders(self):
        record = parse_customer(
            {"id": "gid://shopify/Customer/5", "created_at": "2025-03-01T00:00:00Z", "orders_count": "3", "total_spent": "$120.00"},
            "5",
        )
        rows = build_customer_rows([record], [])
        assert rows[0]["first_order_at"] == datetime(2025, 3, 1)
        assert rows[0]["acquisition_channel"] is None
        assert rows[0]["total_orders"] == 3
        assert rows[0]["total_revenue"] == Decimal("120.00")

    def test_order_only_customers_included(self, pipeline_settings):
        order = parse_order(_order_payload(customer={"id": "gid://shopify/Customer/88"}), pipeline_settings)
        rows = build_customer_rows([], [order])
        assert [r["customer_id"] for r in rows] == ["88"]


class TestSpendAndTraffic:

    def test_meta_insight(self):
        row = parse_meta_insight({
            "campaign_id": "c1",
            "campaign_name": "Broad",
            "date_start": "2025-01-02",
            "spend": "12.345",
            "impressions": "1000",
            "clicks": "20",
            "actions": [{"action_type": "link_click", "value": "20"}, {"action_type": "purchase", "value": "2"}],
            "action_values": [{"action_type": "purchase", "value": "150.00"}],
        })
        assert row["spend"] == Decimal("12.35")
        assert row["conversions"] == 2
        assert row["conversion_value"] == Decimal("150.00")
        assert row["source"] == "meta"

    def test_meta_missing_campaign(self):
        row = parse_meta_insight({"date_start": "2025-01-02", "spend": "5"})
        assert row["campaign_id"] == ""

    def test_meta_negative_spend_is_malformed(self):
        with pytest.raises(MalformedRecord):
            parse_meta_insight({"date_start": "2025-01-02", "spend": "-5"})

    def test_google_micros(self):
        row = parse_google_ads_row({
            "campaign": {"id": "g1", "name": "Brand_Search"},
            "segments": {"date": "2025-01-02"},
            "metrics": {"costMicros": "12500000", "clicks": "10", "conversions": "1.0", "conversionsValue": "80"},
        })
        assert row["spend"] == Decimal("12.50")
        assert row["conversions"] == 1
        assert row["source"] == "google_ads"

    def test_google_missing_cost_is_malformed(self):
        with pytest.raises(MalformedRecord):
            parse_google_ads_row({"campaign": {"id": "g1"}, "segments": {"date": "2025-01-02"}, "metrics": {}})

    def test_ga4_traffic(self):
        row = parse_ga4_traffic({"date": "20250102", "sessionDefaultChannelGroup": "Paid Search", "sessions": "100", "screenPageViews": "60"})
        assert row["pdp_views"] == 60
        assert row["channel_raw"] == "Paid Search"

    def test_ga4_missing_group(self):
        row = parse_ga4_traffic({"date": "2025-01-02", "sessions": "5"})
        assert row["channel_raw"] == "Unassigned"
