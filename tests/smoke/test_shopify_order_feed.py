"""Smoke test for the Shopify order feed against a live store.

Validates that the attribution query runs and orders parse.

Run with valid credentials:
    PYTHONPATH=. pytest tests/smoke/test_shopify_order_feed.py -v
"""
import os
from datetime import datetime, timedelta, timezone

import aiohttp
import pytest

from src.quiz_analytics.shopify.order_feed import ShopifyOrderFeed


@pytest.mark.skipif(
    not os.getenv("SHOPIFY_ADMIN_ACCESS_TOKEN"),
    reason="SHOPIFY_ADMIN_ACCESS_TOKEN not set",
)
@pytest.mark.asyncio
async def test_shopify_order_feed_lists_orders():
    """Fetch the last 7 days of orders.

    PASS Criteria:
    - Query is accepted (no GraphQL errors)
    - Every order parses and falls inside the requested window
    """
    shop_domain = os.getenv("SHOPIFY_STORE_DOMAIN")
    access_token = os.getenv("SHOPIFY_ADMIN_ACCESS_TOKEN")
    api_version = os.getenv("SHOPIFY_API_VERSION", "2024-10")

    if not shop_domain:
        pytest.skip("SHOPIFY_STORE_DOMAIN not set")

    end = datetime.now(timezone.utc)
    start = end - timedelta(days=7)

    async with aiohttp.ClientSession() as session:
        feed = ShopifyOrderFeed(
            session=session,
            access_tokens={shop_domain: access_token},
            api_version=api_version,
        )
        orders = await feed.list_orders(shop_domain, start, end)

    if not orders:
        pytest.skip("No orders found in test date range")

    for order in orders:
        assert start <= order.created_at < end
        assert order.shop == shop_domain

    referenced = sum(1 for order in orders if order.session_reference)
    print(f"Fetched {len(orders)} orders, {referenced} with a quiz session reference")
