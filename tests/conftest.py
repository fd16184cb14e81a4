"""
Test Suite Configuration
"""
from typing import Any, AsyncGenerator, Callable, Dict, List, Optional

import pytest

from growth_marts.config import PipelineSettings
from growth_marts.database.connection import Database


@pytest.fixture
def pipeline_settings() -> PipelineSettings:
    """Default business constants, independent of the environment"""
    return PipelineSettings()


@pytest.fixture
async def db() -> AsyncGenerator[Database, None]:
    """Fresh in-memory database with the full schema"""
    database = Database("sqlite+aiosqlite:///:memory:", echo=False)
    await database.create_all()
    yield database
    await database.dispose()


@pytest.fixture
def order_record() -> Callable[..., Dict[str, Any]]:
    """Factory for raw Shopify order records"""

    def make(
        order_number: int,
        created_at: str,
        total_price: str = "100.00",
        customer_id: Optional[str] = "501",
        total_discounts: str = "0.00",
        total_refunds: str = "0.00",
        landing_site: Optional[str] = "/?utm_source=facebook&utm_medium=cpc&utm_campaign=PROS_TOF_Broad",
        line_items: Optional[List[Dict[str, Any]]] = None,
        tags: str = "",
        **extra: Any,
    ) -> Dict[str, Any]:
        payload = {
            "id": f"gid://shopify/Order/{order_number}",
            "order_number": order_number,
            "created_at": created_at,
            "total_price": total_price,
            "total_discounts": total_discounts,
            "total_refunds": total_refunds,
            "currency": "USD",
            "source_name": "web",
            "landing_site": landing_site,
            "line_items": line_items if line_items is not None else [],
            "shipping_address": {"province_code": "CA"},
            "tags": tags,
            **extra,
        }
        if customer_id is not None:
            payload["customer"] = {"id": f"gid://shopify/Customer/{customer_id}", "email": f"c{customer_id}@example.com"}
        return {
            "source": "shopify",
            "entity": "orders",
            "externalId": str(order_number),
            "cursor": created_at,
            "payload": payload,
        }

    return make


@pytest.fixture
def meta_record() -> Callable[..., Dict[str, Any]]:
    """Factory for raw Meta insight records"""

    def make(day: str, spend: str = "100.00", campaign_id: str = "meta_camp_001", campaign_name: str = "PROS_TOF_Broad") -> Dict[str, Any]:
        return {
            "source": "meta",
            "entity": "insights",
            "externalId": f"{campaign_id}_{day}",
            "cursor": day,
            "payload": {
                "campaign_id": campaign_id,
                "campaign_name": campaign_name,
                "date_start": day,
                "date_stop": day,
                "spend": spend,
                "impressions": "10000",
                "clicks": "200",
                "actions": [{"action_type": "purchase", "value": "4"}],
                "action_values": [{"action_type": "purchase", "value": "400.00"}],
            },
        }

    return make


@pytest.fixture
def ga4_record() -> Callable[..., Dict[str, Any]]:
    """Factory for raw GA4 traffic records"""

    def make(day: str, group: str = "Paid Social", sessions: int = 1000) -> Dict[str, Any]:
        return {
            "source": "ga4",
            "entity": "traffic",
            "externalId": f"{day}_{group}",
            "cursor": day,
            "payload": {
                "date": day,
                "sessionDefaultChannelGroup": group,
                "sessions": str(sessions),
                "itemViews": str(sessions // 2),
                "addToCarts": str(sessions // 10),
                "checkouts": str(sessions // 20),
                "ecommercePurchases": str(sessions // 40),
            },
        }

    return make
