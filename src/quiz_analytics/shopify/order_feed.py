"""Async Shopify order feed for quiz attribution.

Reads orders of a shop for a half-open creation window through the Admin
GraphQL API, with cursor pagination and retry on 429/5xx/network errors.
"""
import asyncio
import json
import logging
import random
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

import aiofiles
import aiohttp

from ..schemas.models import Order
from ..sync.exceptions import UpstreamUnavailable


SESSION_ATTRIBUTE_KEY = "turbo_quiz_session"
SESSION_NOTE_PATTERN = re.compile(r"quiz_session:([a-zA-Z0-9-]+)")

QUERY_ORDERS_FOR_ATTRIBUTION = """
query OrdersForAttribution($query: String!, $cursor: String) {
  orders(first: 250, query: $query, after: $cursor, sortKey: CREATED_AT) {
    pageInfo {
      hasNextPage
      endCursor
    }
    nodes {
      id
      name
      createdAt
      note
      totalPriceSet {
        shopMoney {
          amount
          currencyCode
        }
      }
      customer {
        id
      }
      customAttributes {
        key
        value
      }
      lineItems(first: 250) {
        nodes {
          id
        }
      }
    }
  }
}
"""


def _redact(text: str, token: str) -> str:
    if not text or not token:
        return text
    return text.replace(token, "[REDACTED]")


def _legacy_id(gid: Optional[str]) -> Optional[str]:
    """Numeric tail of a GID (gid://shopify/Order/123 -> "123")."""
    if not gid:
        return None
    return str(gid).rsplit("/", 1)[-1] or None


def _parse_shopify_datetime(value: str) -> datetime:
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    return datetime.fromisoformat(value)


def extract_session_reference(order_node: dict) -> Optional[str]:
    """Quiz session id stamped by the storefront, if any.

    Checks cart attributes first, then a quiz_session:<id> token in the
    order note.
    """
    for attribute in order_node.get("customAttributes") or []:
        if attribute.get("key") == SESSION_ATTRIBUTE_KEY and attribute.get("value"):
            return attribute["value"]

    match = SESSION_NOTE_PATTERN.search(order_node.get("note") or "")
    if match:
        return match.group(1)
    return None


def parse_order_node(shop: str, order_node: dict) -> Order:
    """Convert a Shopify GraphQL order node into an Order."""
    money = (order_node.get("totalPriceSet") or {}).get("shopMoney") or {}
    customer = order_node.get("customer") or {}
    line_items = (order_node.get("lineItems") or {}).get("nodes") or []

    return Order(
        order_id=_legacy_id(order_node["id"]),
        shop=shop,
        created_at=_parse_shopify_datetime(order_node["createdAt"]),
        total_price=float(money.get("amount") or 0),
        currency=money.get("currencyCode") or "USD",
        customer_id=_legacy_id(customer.get("id")),
        order_name=order_node.get("name"),
        line_items_count=len(line_items),
        session_reference=extract_session_reference(order_node),
    )


class ShopifyOrderFeed:
    """Order feed backed by the Shopify Admin GraphQL API.

    Any failure after retries surfaces as UpstreamUnavailable; partial
    pages are never returned.
    """

    MAX_RETRY_ATTEMPTS = 5
    RETRY_BASE_DELAY = 0.5  # seconds
    RETRY_MULTIPLIER = 2.0
    RETRY_MAX_DELAY = 30.0  # seconds
    RETRY_JITTER_MS = 250  # milliseconds

    def __init__(
        self,
        session: aiohttp.ClientSession,
        access_tokens: dict[str, str],
        api_version: str,
        raw_dir: Optional[Path] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        """Initialize Shopify order feed.

        Args:
            session: Injected aiohttp ClientSession
            access_tokens: Admin API token per shop domain (never logged)
            api_version: API version (e.g., '2024-10')
            raw_dir: Directory for raw JSONL audit logs (None disables)
            logger: Optional logger instance
        """
        self.session = session
        self._access_tokens = dict(access_tokens)
        self.api_version = api_version
        self.raw_dir = Path(raw_dir) if raw_dir else None
        self.logger = logger or logging.getLogger(__name__)

    async def list_orders(
        self, shop: str, start: datetime, end: datetime
    ) -> list[Order]:
        """Fetch orders of a shop created in [start, end).

        Args:
            shop: Shop domain
            start: Inclusive lower bound on createdAt
            end: Exclusive upper bound on createdAt

        Returns:
            Orders sorted by creation time

        Raises:
            UpstreamUnavailable: Missing credentials or API failure
        """
        access_token = self._access_tokens.get(shop)
        if not access_token:
            raise UpstreamUnavailable(
                "order_feed", f"no Admin API access token configured for shop={shop}"
            )

        start_iso = start.astimezone(timezone.utc).isoformat()
        end_iso = end.astimezone(timezone.utc).isoformat()
        query_filter = f"created_at:>={start_iso} created_at:<{end_iso}"

        nodes: list[dict] = []
        cursor = None

        while True:
            payload = {
                "query": QUERY_ORDERS_FOR_ATTRIBUTION,
                "variables": {"query": query_filter, "cursor": cursor},
            }
            result = await self._post_graphql(shop, access_token, payload)

            try:
                orders_data = result["data"]["orders"]
                nodes.extend(orders_data["nodes"])
                page_info = orders_data["pageInfo"]
            except (KeyError, TypeError) as exc:
                raise UpstreamUnavailable(
                    "order_feed", f"malformed orders response: missing {exc}"
                ) from exc

            if not page_info["hasNextPage"]:
                break
            cursor = page_info["endCursor"]

        await self._write_raw_orders(shop, start, end, nodes)

        orders = []
        for node in nodes:
            try:
                order = parse_order_node(shop, node)
            except (KeyError, ValueError) as exc:
                raise UpstreamUnavailable(
                    "order_feed", f"unparseable order {node.get('id')}: {exc}"
                ) from exc
            if start <= order.created_at < end:
                orders.append(order)

        orders.sort(key=lambda order: (order.created_at, order.order_id))
        self.logger.info(
            "Fetched %s orders for shop=%s [%s, %s)",
            len(orders),
            shop,
            start_iso,
            end_iso,
        )
        return orders

    async def _post_graphql(self, shop: str, access_token: str, payload: dict) -> dict:
        """Execute GraphQL POST with retry logic.

        Raises:
            UpstreamUnavailable: On non-retryable errors or max retries exceeded
        """
        url = f"https://{shop}/admin/api/{self.api_version}/graphql.json"
        headers = {
            "Content-Type": "application/json",
            "X-Shopify-Access-Token": access_token,
        }

        attempt = 0
        while True:
            attempt += 1

            try:
                timeout = aiohttp.ClientTimeout(total=60, connect=10)
                async with self.session.post(
                    url, json=payload, headers=headers, timeout=timeout
                ) as resp:
                    if resp.status == 429 or 500 <= resp.status < 600:
                        body = await resp.text()
                        if attempt > self.MAX_RETRY_ATTEMPTS:
                            raise UpstreamUnavailable(
                                "order_feed",
                                f"HTTP {resp.status} after {attempt} attempts: "
                                f"{_redact(body[:200], access_token)}",
                            )

                        retry_after = resp.headers.get("Retry-After")
                        delay = (
                            float(retry_after)
                            if resp.status == 429 and retry_after
                            else self._calculate_backoff(attempt)
                        )
                        self.logger.warning(
                            "HTTP %s from shop=%s, backoff=%.2fs, attempt=%s",
                            resp.status,
                            shop,
                            delay,
                            attempt,
                        )
                        await asyncio.sleep(delay)
                        continue

                    if resp.status != 200:
                        body = await resp.text()
                        self.logger.error(
                            "Shopify GraphQL error (%s): %s",
                            resp.status,
                            _redact(body[:500], access_token),
                        )
                        raise UpstreamUnavailable(
                            "order_feed", f"HTTP {resp.status} (non-retryable)"
                        )

                    json_data = await resp.json()

                    if json_data.get("errors"):
                        messages = [
                            e.get("message", str(e)) if isinstance(e, dict) else str(e)
                            for e in json_data["errors"]
                        ]
                        raise UpstreamUnavailable(
                            "order_feed", f"GraphQL errors: {'; '.join(messages)}"
                        )

                    return json_data

            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                if attempt > self.MAX_RETRY_ATTEMPTS:
                    raise UpstreamUnavailable(
                        "order_feed", f"Network error after {attempt} attempts: {e}"
                    ) from e

                delay = self._calculate_backoff(attempt)
                self.logger.warning(
                    "Network error: %s, backoff=%.2fs, attempt=%s", e, delay, attempt
                )
                await asyncio.sleep(delay)

    def _calculate_backoff(self, attempt: int) -> float:
        """Calculate exponential backoff with jitter.

        Args:
            attempt: Current retry attempt number (1-indexed)

        Returns:
            Delay in seconds
        """
        delay = min(
            self.RETRY_BASE_DELAY * (self.RETRY_MULTIPLIER ** (attempt - 1)),
            self.RETRY_MAX_DELAY,
        )
        jitter = random.uniform(0, self.RETRY_JITTER_MS / 1000.0)
        return delay + jitter

    async def _write_raw_orders(
        self, shop: str, start: datetime, end: datetime, nodes: list[dict]
    ) -> None:
        """Write fetched order nodes to a per-window JSONL audit file.

        A retried window overwrites the file written for the same start.
        """
        if self.raw_dir is None:
            return

        fetched_at = datetime.now(timezone.utc).isoformat()
        stamp = start.astimezone(timezone.utc).strftime("%Y%m%dT%H%M%S")
        jsonl_path = self.raw_dir / f"raw_shopify_orders_{shop}_{stamp}.jsonl"

        try:
            self.raw_dir.mkdir(parents=True, exist_ok=True)
            async with aiofiles.open(jsonl_path, mode="w", encoding="utf-8") as handle:
                for node in nodes:
                    envelope = {
                        "source": "shopify",
                        "shop": shop,
                        "window_start": start.isoformat(),
                        "window_end": end.isoformat(),
                        "fetched_at": fetched_at,
                        "response_item": node,
                    }
                    await handle.write(json.dumps(envelope, separators=(",", ":")) + "\n")
        except OSError as exc:
            self.logger.error("Failed to write raw order log %s: %s", jsonl_path, exc)
            return

        self.logger.debug("Wrote %s orders to %s", len(nodes), jsonl_path)
