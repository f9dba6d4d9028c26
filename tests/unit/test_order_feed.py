"""Unit tests for ShopifyOrderFeed (mocked, no real API calls)."""
import json
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import aiohttp
import pytest

from src.quiz_analytics.shopify.order_feed import (
    ShopifyOrderFeed,
    extract_session_reference,
    parse_order_node,
)
from src.quiz_analytics.sync.exceptions import UpstreamUnavailable


SHOP = "test-shop.myshopify.com"
T0 = datetime(2024, 6, 1, 0, 0, tzinfo=timezone.utc)
T1 = T0 + timedelta(days=1)


def order_node(legacy_id, created_at, customer_id=None, amount="49.90", **extra):
    node = {
        "id": f"gid://shopify/Order/{legacy_id}",
        "name": f"#{legacy_id}",
        "createdAt": created_at,
        "note": None,
        "totalPriceSet": {"shopMoney": {"amount": amount, "currencyCode": "EUR"}},
        "customer": {"id": f"gid://shopify/Customer/{customer_id}"} if customer_id else None,
        "customAttributes": [],
        "lineItems": {"nodes": [{"id": "gid://shopify/LineItem/1"}]},
    }
    node.update(extra)
    return node


def orders_page(nodes, has_next=False, cursor=None):
    return {
        "data": {
            "orders": {
                "pageInfo": {"hasNextPage": has_next, "endCursor": cursor},
                "nodes": nodes,
            }
        }
    }


def mock_response(status=200, payload=None, text="", headers=None):
    response = AsyncMock()
    response.status = status
    response.headers = headers or {}
    response.json.return_value = payload
    response.text.return_value = text
    response.__aenter__.return_value = response
    return response


@pytest.fixture
def mock_session():
    """Mock aiohttp ClientSession."""
    return MagicMock()


@pytest.fixture
def feed(mock_session):
    return ShopifyOrderFeed(
        session=mock_session,
        access_tokens={SHOP: "shpat_fake_token"},
        api_version="2024-10",
    )


def test_parse_order_node():
    node = order_node("1001", "2024-06-01T10:30:00Z", customer_id="77")

    order = parse_order_node(SHOP, node)

    assert order.order_id == "1001"
    assert order.order_name == "#1001"
    assert order.created_at == datetime(2024, 6, 1, 10, 30, tzinfo=timezone.utc)
    assert order.total_price == 49.90
    assert order.currency == "EUR"
    assert order.customer_id == "77"
    assert order.line_items_count == 1
    assert order.session_reference is None


def test_extract_session_reference_prefers_cart_attribute():
    node = order_node(
        "1001",
        "2024-06-01T10:30:00Z",
        note="gift wrap please quiz_session:from-note",
        customAttributes=[
            {"key": "other", "value": "x"},
            {"key": "turbo_quiz_session", "value": "from-attribute"},
        ],
    )

    assert extract_session_reference(node) == "from-attribute"


def test_extract_session_reference_from_note():
    node = order_node("1001", "2024-06-01T10:30:00Z", note="quiz_session:session-abc123")

    assert extract_session_reference(node) == "session-abc123"
    assert extract_session_reference(order_node("1002", "2024-06-01T10:30:00Z")) is None


@pytest.mark.asyncio
async def test_list_orders_paginates_and_filters(feed, mock_session):
    """Test cursor pagination, window filtering and ordering."""
    page1 = mock_response(
        payload=orders_page(
            [order_node("1002", "2024-06-01T09:00:00Z")], has_next=True, cursor="c1"
        )
    )
    page2 = mock_response(
        payload=orders_page(
            [
                order_node("1001", "2024-06-01T08:00:00Z"),
                order_node("1003", "2024-06-02T00:00:00Z"),
            ]
        )
    )
    mock_session.post.side_effect = [page1, page2]

    orders = await feed.list_orders(SHOP, T0, T1)

    assert [order.order_id for order in orders] == ["1001", "1002"]
    assert mock_session.post.call_count == 2
    second_payload = mock_session.post.call_args_list[1].kwargs["json"]
    assert second_payload["variables"]["cursor"] == "c1"
    assert "created_at:>=" in second_payload["variables"]["query"]
    headers = mock_session.post.call_args_list[0].kwargs["headers"]
    assert headers["X-Shopify-Access-Token"] == "shpat_fake_token"


@pytest.mark.asyncio
async def test_list_orders_writes_raw_jsonl(mock_session, tmp_path):
    feed = ShopifyOrderFeed(
        session=mock_session,
        access_tokens={SHOP: "shpat_fake_token"},
        api_version="2024-10",
        raw_dir=tmp_path / "raw",
    )
    mock_session.post.return_value = mock_response(
        payload=orders_page([order_node("1001", "2024-06-01T08:00:00Z")])
    )

    await feed.list_orders(SHOP, T0, T1)

    [raw_file] = list((tmp_path / "raw").glob("raw_shopify_orders_*.jsonl"))
    [line] = raw_file.read_text(encoding="utf-8").splitlines()
    envelope = json.loads(line)
    assert envelope["shop"] == SHOP
    assert envelope["response_item"]["id"] == "gid://shopify/Order/1001"


@pytest.mark.asyncio
async def test_retried_window_overwrites_raw_jsonl(mock_session, tmp_path):
    feed = ShopifyOrderFeed(
        session=mock_session,
        access_tokens={SHOP: "shpat_fake_token"},
        api_version="2024-10",
        raw_dir=tmp_path / "raw",
    )
    mock_session.post.side_effect = [
        mock_response(payload=orders_page([order_node("1001", "2024-06-01T08:00:00Z")])),
        mock_response(payload=orders_page([order_node("1002", "2024-06-01T09:00:00Z")])),
    ]

    await feed.list_orders(SHOP, T0, T1)
    await feed.list_orders(SHOP, T0, T1)

    [raw_file] = list((tmp_path / "raw").glob("raw_shopify_orders_*.jsonl"))
    [line] = raw_file.read_text(encoding="utf-8").splitlines()
    assert json.loads(line)["response_item"]["id"] == "gid://shopify/Order/1002"


@pytest.mark.asyncio
async def test_missing_token_raises_upstream_unavailable(mock_session):
    feed = ShopifyOrderFeed(session=mock_session, access_tokens={}, api_version="2024-10")

    with pytest.raises(UpstreamUnavailable) as exc_info:
        await feed.list_orders(SHOP, T0, T1)

    assert exc_info.value.source == "order_feed"
    mock_session.post.assert_not_called()


@pytest.mark.asyncio
async def test_graphql_errors_raise(feed, mock_session):
    mock_session.post.return_value = mock_response(
        payload={"errors": [{"message": "Access denied for orders field"}]}
    )

    with pytest.raises(UpstreamUnavailable) as exc_info:
        await feed.list_orders(SHOP, T0, T1)

    assert "Access denied" in str(exc_info.value)


@pytest.mark.asyncio
async def test_malformed_response_raises(feed, mock_session):
    mock_session.post.return_value = mock_response(payload={"data": {}})

    with pytest.raises(UpstreamUnavailable) as exc_info:
        await feed.list_orders(SHOP, T0, T1)

    assert "malformed" in str(exc_info.value)


@pytest.mark.asyncio
async def test_429_honors_retry_after(feed, mock_session):
    throttled = mock_response(status=429, text="Throttled", headers={"Retry-After": "2"})
    ok = mock_response(payload=orders_page([]))
    mock_session.post.side_effect = [throttled, ok]

    with patch(
        "src.quiz_analytics.shopify.order_feed.asyncio.sleep", new_callable=AsyncMock
    ) as mock_sleep:
        orders = await feed.list_orders(SHOP, T0, T1)

    assert orders == []
    mock_sleep.assert_awaited_once_with(2.0)


@pytest.mark.asyncio
async def test_server_errors_exhaust_retries(feed, mock_session):
    mock_session.post.return_value = mock_response(status=503, text="unavailable")

    with patch(
        "src.quiz_analytics.shopify.order_feed.asyncio.sleep", new_callable=AsyncMock
    ):
        with pytest.raises(UpstreamUnavailable) as exc_info:
            await feed.list_orders(SHOP, T0, T1)

    assert "HTTP 503" in str(exc_info.value)
    assert mock_session.post.call_count == ShopifyOrderFeed.MAX_RETRY_ATTEMPTS + 1


@pytest.mark.asyncio
async def test_non_retryable_status_fails_fast(feed, mock_session):
    """Test 401 is not retried and the token never appears in the error."""
    mock_session.post.return_value = mock_response(
        status=401, text="bad token shpat_fake_token"
    )

    with pytest.raises(UpstreamUnavailable) as exc_info:
        await feed.list_orders(SHOP, T0, T1)

    assert mock_session.post.call_count == 1
    assert "shpat_fake_token" not in str(exc_info.value)


@pytest.mark.asyncio
async def test_network_error_is_retried(feed, mock_session):
    ok = mock_response(payload=orders_page([order_node("1001", "2024-06-01T08:00:00Z")]))
    mock_session.post.side_effect = [aiohttp.ClientConnectionError("reset"), ok]

    with patch(
        "src.quiz_analytics.shopify.order_feed.asyncio.sleep", new_callable=AsyncMock
    ):
        orders = await feed.list_orders(SHOP, T0, T1)

    assert [order.order_id for order in orders] == ["1001"]


def test_backoff_is_capped(feed):
    assert feed._calculate_backoff(1) < 1.0
    assert feed._calculate_backoff(20) <= ShopifyOrderFeed.RETRY_MAX_DELAY + 0.25
