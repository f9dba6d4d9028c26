"""Wiring of stores, feed, lock backend and orchestrator from settings."""
import sqlite3
from contextlib import asynccontextmanager, contextmanager
from datetime import datetime
from typing import AsyncIterator, Callable, Iterator, Optional

import aiohttp
from redis.asyncio import Redis

from .config import SyncSettings
from .shopify.order_feed import ShopifyOrderFeed
from .storage.analytics import AnalyticsStore
from .storage.schema import connect, init_database
from .storage.sessions import SessionStore
from .sync.aggregator import AnalyticsAggregator
from .sync.matcher import AttributionMatcher
from .sync.orchestrator import SyncOrchestrator


def build_sync_orchestrator(
    settings: SyncSettings,
    db_conn: sqlite3.Connection,
    http_session: aiohttp.ClientSession,
    redis: Redis,
    clock: Optional[Callable[[], datetime]] = None,
) -> SyncOrchestrator:
    """Assemble the matcher, aggregator and orchestrator over one database."""
    session_store = SessionStore(db_conn)
    analytics_store = AnalyticsStore(db_conn)
    order_feed = ShopifyOrderFeed(
        session=http_session,
        access_tokens=settings.shop_tokens,
        api_version=settings.shopify_api_version,
        raw_dir=settings.raw_dir,
    )

    matcher = AttributionMatcher(
        session_store=session_store,
        order_feed=order_feed,
        claim_store=analytics_store,
        policy=settings.match_policy(),
    )
    aggregator = AnalyticsAggregator(analytics_store, tz=settings.reporting_timezone)

    return SyncOrchestrator(
        matcher=matcher,
        aggregator=aggregator,
        store=analytics_store,
        redis=redis,
        safety_lag=settings.safety_lag,
        max_window_span=settings.max_window_span,
        initial_lookback=settings.initial_lookback,
        lock_ttl_seconds=settings.lock_ttl_seconds,
        clock=clock,
    )


@contextmanager
def open_database(settings: SyncSettings) -> Iterator[sqlite3.Connection]:
    """Initialize the schema and yield a connection, closing it afterwards."""
    init_database(settings.db_path)
    db_conn = connect(settings.db_path)
    try:
        yield db_conn
    finally:
        db_conn.close()


@asynccontextmanager
async def open_sync_orchestrator(
    settings: SyncSettings,
) -> AsyncIterator[SyncOrchestrator]:
    """Yield a ready orchestrator; closes HTTP, Redis and SQLite on exit."""
    with open_database(settings) as db_conn:
        redis = Redis.from_url(settings.redis_url, decode_responses=False)
        try:
            timeout = aiohttp.ClientTimeout(total=300, connect=30)
            async with aiohttp.ClientSession(timeout=timeout) as http_session:
                yield build_sync_orchestrator(settings, db_conn, http_session, redis)
        finally:
            await redis.aclose()
