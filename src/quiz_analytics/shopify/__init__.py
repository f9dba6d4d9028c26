"""Shopify integration modules."""
from .order_feed import ShopifyOrderFeed, extract_session_reference, parse_order_node

__all__ = [
    "ShopifyOrderFeed",
    "extract_session_reference",
    "parse_order_node",
]
