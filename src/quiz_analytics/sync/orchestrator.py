"""Sync orchestrator: one reconciliation pass per shop, guarded by a Redis lock.

A pass reconciles [watermark, now - safety_lag), clamped to the matcher's
maximum span. The watermark only moves after the matcher, the attribution
upsert and the aggregator have all succeeded; a failed pass is retried
verbatim on the next tick. A shop's first pass stores now - initial_lookback
as its watermark before any work, so that pass is retried verbatim too.
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from redis.asyncio import Redis
from redis.asyncio.lock import Lock as AsyncRedisLock

from ..schemas.models import SyncResult, TimeWindow
from .aggregator import AnalyticsAggregator
from .exceptions import SyncInProgressError
from .matcher import DEFAULT_MAX_WINDOW_SPAN, AttributionMatcher


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SyncOrchestrator:
    """Drives attribution and rollup for one shop at a time.

    Enforces 1 concurrent pass per shop via Redis locks.
    """

    LOCK_KEY_TEMPLATE = "quiz:sync_lock:{shop}"
    DEFAULT_LOCK_TTL_SECONDS = 900  # 15 minutes
    DEFAULT_SAFETY_LAG = timedelta(minutes=5)
    DEFAULT_INITIAL_LOOKBACK = timedelta(days=7)

    def __init__(
        self,
        matcher: AttributionMatcher,
        aggregator: AnalyticsAggregator,
        store,
        redis: Redis,
        safety_lag: timedelta = DEFAULT_SAFETY_LAG,
        max_window_span: timedelta = DEFAULT_MAX_WINDOW_SPAN,
        initial_lookback: timedelta = DEFAULT_INITIAL_LOOKBACK,
        lock_ttl_seconds: int = DEFAULT_LOCK_TTL_SECONDS,
        clock: Optional[Callable[[], datetime]] = None,
        logger: Optional[logging.Logger] = None,
    ):
        """Initialize orchestrator.

        Args:
            matcher: Attribution matcher
            aggregator: Analytics aggregator
            store: AnalyticsStore (attributions, watermarks, run log)
            redis: Injected redis.asyncio.Redis client
            safety_lag: Distance kept from "now" for late-visible orders
            max_window_span: Widest window handed to the matcher
            initial_lookback: Window start for a shop without a watermark
            lock_ttl_seconds: Per-shop lock expiry
            clock: Returns the current aware datetime (for tests)
            logger: Optional logger instance
        """
        self.matcher = matcher
        self.aggregator = aggregator
        self.store = store
        self.redis = redis
        self.safety_lag = safety_lag
        self.max_window_span = max_window_span
        self.initial_lookback = initial_lookback
        self.lock_ttl_seconds = lock_ttl_seconds
        self._clock = clock or _utcnow
        self.logger = logger or logging.getLogger(__name__)

    def compute_window(self, shop: str, now: datetime) -> Optional[TimeWindow]:
        """Next window to reconcile, or None when nothing is due."""
        watermark = self.store.get_watermark(shop)
        start = watermark if watermark is not None else now - self.initial_lookback
        end = now - self.safety_lag

        if end <= start:
            return None

        end = min(end, start + self.max_window_span)
        return TimeWindow(start=start, end=end)

    async def run_sync(self, shop: str) -> SyncResult:
        """Run one reconciliation pass for a shop.

        Raises:
            SyncInProgressError: Another pass for this shop holds the lock
            InvalidWindow: Window rejected by the matcher
            UpstreamUnavailable: Session store or order feed failed
            InconsistentAttribution: Aggregator got a stale snapshot
        """
        lock_key = self.LOCK_KEY_TEMPLATE.format(shop=shop)
        lock = AsyncRedisLock(
            self.redis,
            name=lock_key,
            timeout=self.lock_ttl_seconds,
            blocking=False,
        )

        acquired = await lock.acquire(blocking=False)
        if not acquired:
            raise SyncInProgressError(shop, lock_key)

        self.logger.info("Acquired sync lock for shop=%s", shop)

        try:
            return await self._run_locked(shop)
        finally:
            await self._release_lock_best_effort(lock, shop)

    def _anchor_first_window(self, shop: str, now: datetime) -> None:
        """Persist the initial window start so a failed first pass retries it."""
        if self.store.get_watermark(shop) is not None:
            return

        anchor = now - self.initial_lookback
        self.store.set_watermark(shop, anchor)
        self.logger.info(
            "Anchored first sync window for shop=%s at %s", shop, anchor.isoformat()
        )

    async def _run_locked(self, shop: str) -> SyncResult:
        now = self._clock()
        self._anchor_first_window(shop, now)
        window = self.compute_window(shop, now)
        if window is None:
            self.logger.info("Nothing to sync for shop=%s (window empty)", shop)
            return SyncResult(shop=shop)

        self.logger.info(
            "Syncing shop=%s window [%s, %s)",
            shop,
            window.start.isoformat(),
            window.end.isoformat(),
        )

        try:
            snapshot = await self.matcher.fetch_snapshot(shop, window.start, window.end)
            attributions = self.matcher.match(snapshot)
            self.store.upsert_attributions(attributions)
            deltas = self.aggregator.apply_attributions(attributions, snapshot.sessions)
            self.store.set_watermark(shop, window.end)

        except Exception as exc:
            self.logger.error(
                "Sync failed for shop=%s window [%s, %s): %s",
                shop,
                window.start.isoformat(),
                window.end.isoformat(),
                exc,
                exc_info=True,
            )
            try:
                self.store.record_sync_failure(shop, window.start, window.end, str(exc))
            except Exception as record_exc:
                self.logger.error("Failed to record sync failure: %s", record_exc)
            raise

        result = SyncResult(
            shop=shop,
            window_processed=window,
            orders_processed=len(attributions),
            orders_attributed=sum(1 for a in attributions if a.is_matched),
            summaries_touched=len({delta.key for delta in deltas}),
        )

        self.store.record_sync_success(
            shop,
            window.start,
            window.end,
            f"{result.orders_attributed}/{result.orders_processed} orders attributed, "
            f"{result.summaries_touched} summaries touched",
        )
        self.logger.info(
            "Sync complete for shop=%s: %s/%s orders attributed, %s summaries touched",
            shop,
            result.orders_attributed,
            result.orders_processed,
            result.summaries_touched,
        )
        return result

    async def _release_lock_best_effort(self, lock: AsyncRedisLock, shop: str) -> None:
        """Release Redis lock with error suppression."""
        try:
            await lock.release()
            self.logger.info("Released sync lock for shop=%s", shop)
        except Exception as e:
            self.logger.error(f"Failed to release sync lock for shop={shop}: {e}")
