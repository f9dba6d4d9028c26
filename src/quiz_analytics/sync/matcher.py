"""Order-to-quiz-session attribution matcher.

Attribution tiers, tried in order for each order:
- session-reference: the cart/order carries the quiz session id itself
- exact-customer: a session of the same customer covers the order time
- time-proximity: the anonymous session that started closest before the order
- none: no session qualifies (stored so the order is not rescanned)

A session is credited with at most one order. Orders are processed oldest
first, so an earlier order claims a session before a later one can.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional, Protocol

from ..schemas.models import (
    Attribution,
    AttributionTier,
    Order,
    QuizSession,
    TimeWindow,
    ensure_utc,
)
from .exceptions import InvalidWindow


logger = logging.getLogger(__name__)


DEFAULT_MAX_ATTRIBUTION_DELAY = timedelta(days=7)
DEFAULT_MAX_WINDOW_SPAN = timedelta(days=7)


class CustomerTieBreak(str, Enum):
    """Which same-customer session wins when several qualify."""

    LATEST_START = "latest_start"
    EARLIEST_START = "earliest_start"


class ProximityFallback(str, Enum):
    """Policy for orders without a customer match."""

    CLOSEST_START = "closest_start"
    DISABLED = "disabled"


@dataclass(frozen=True)
class MatchPolicy:
    """Tunable matching rules."""

    max_attribution_delay: timedelta = DEFAULT_MAX_ATTRIBUTION_DELAY
    max_window_span: timedelta = DEFAULT_MAX_WINDOW_SPAN
    customer_tie_break: CustomerTieBreak = CustomerTieBreak.LATEST_START
    proximity_fallback: ProximityFallback = ProximityFallback.CLOSEST_START
    honor_session_reference: bool = True


@dataclass(frozen=True)
class AttributionSnapshot:
    """Everything one matching pass reads, fetched once up front."""

    shop: str
    window: TimeWindow
    sessions: tuple[QuizSession, ...]
    orders: tuple[Order, ...]
    claimed_session_ids: frozenset[str] = field(default_factory=frozenset)

    def sessions_by_id(self) -> dict[str, QuizSession]:
        return {session.session_id: session for session in self.sessions}


class SessionReader(Protocol):
    def list_sessions(
        self, shop: str, start: datetime, end: datetime
    ) -> list[QuizSession]: ...


class OrderReader(Protocol):
    async def list_orders(
        self, shop: str, start: datetime, end: datetime
    ) -> list[Order]: ...


class ClaimReader(Protocol):
    def list_claimed_session_ids(
        self, shop: str, start: datetime, end: datetime
    ) -> set[str]: ...


def validate_window(
    window_start: datetime,
    window_end: datetime,
    max_span: timedelta = DEFAULT_MAX_WINDOW_SPAN,
) -> TimeWindow:
    """Check a half-open window and return it normalized to UTC.

    Raises:
        InvalidWindow: end <= start, or span exceeds max_span
    """
    window_start = ensure_utc(window_start)
    window_end = ensure_utc(window_end)

    if window_end <= window_start:
        raise InvalidWindow(
            f"Window end {window_end.isoformat()} must be after start "
            f"{window_start.isoformat()}",
            window_start,
            window_end,
        )
    if window_end - window_start > max_span:
        raise InvalidWindow(
            f"Window span {window_end - window_start} exceeds maximum {max_span}",
            window_start,
            window_end,
        )
    return TimeWindow(start=window_start, end=window_end)


def _covers(session: QuizSession, order: Order, delay: timedelta) -> bool:
    return (
        session.shop == order.shop
        and session.started_at <= order.created_at <= session.started_at + delay
    )


def _latest_first(session: QuizSession) -> tuple:
    return (-session.started_at.timestamp(), session.session_id)


def _earliest_first(session: QuizSession) -> tuple:
    return (session.started_at.timestamp(), session.session_id)


def _select_session(
    order: Order,
    sessions: list[QuizSession],
    sessions_by_id: dict[str, QuizSession],
    claimed: set[str],
    policy: MatchPolicy,
) -> tuple[Optional[QuizSession], AttributionTier]:
    delay = policy.max_attribution_delay

    def eligible(session: QuizSession) -> bool:
        return session.session_id not in claimed and _covers(session, order, delay)

    if policy.honor_session_reference and order.session_reference:
        referenced = sessions_by_id.get(order.session_reference)
        if referenced is not None and eligible(referenced):
            return referenced, AttributionTier.SESSION_REFERENCE

    if order.customer_id:
        same_customer = [
            session
            for session in sessions
            if session.customer_id == order.customer_id and eligible(session)
        ]
        if same_customer:
            if len(same_customer) > 1:
                logger.debug(
                    "Order %s has %s same-customer sessions, tie-break=%s",
                    order.order_id,
                    len(same_customer),
                    policy.customer_tie_break.value,
                )
            sort_key = (
                _latest_first
                if policy.customer_tie_break == CustomerTieBreak.LATEST_START
                else _earliest_first
            )
            return min(same_customer, key=sort_key), AttributionTier.EXACT_CUSTOMER

    if policy.proximity_fallback == ProximityFallback.CLOSEST_START:
        anonymous = [
            session
            for session in sessions
            if session.customer_id is None and eligible(session)
        ]
        if anonymous:
            # Latest start not after the order is the closest one.
            return min(anonymous, key=_latest_first), AttributionTier.TIME_PROXIMITY

    return None, AttributionTier.NONE


def match_orders(
    snapshot: AttributionSnapshot,
    policy: Optional[MatchPolicy] = None,
) -> list[Attribution]:
    """Attribute every order of a snapshot to at most one quiz session.

    Pure function of its inputs: the same snapshot and policy always yield
    the same list, ordered by order creation time.

    Args:
        snapshot: Sessions, orders and previously claimed session ids
        policy: Matching rules (defaults to MatchPolicy())

    Returns:
        One Attribution per order
    """
    policy = policy or MatchPolicy()
    claimed: set[str] = set(snapshot.claimed_session_ids)
    sessions = list(snapshot.sessions)
    sessions_by_id = snapshot.sessions_by_id()
    matched_at = snapshot.window.end

    attributions: list[Attribution] = []
    for order in sorted(snapshot.orders, key=lambda o: (o.created_at, o.order_id)):
        session, tier = _select_session(
            order, sessions, sessions_by_id, claimed, policy
        )
        if session is not None:
            claimed.add(session.session_id)

        attributions.append(
            Attribution(
                order_id=order.order_id,
                shop=order.shop,
                order_created_at=order.created_at,
                matched_session_id=session.session_id if session else None,
                quiz_id=session.quiz_id if session else None,
                tier=tier,
                matched_at=matched_at,
                order_total=order.total_price,
                currency=order.currency,
            )
        )

    return attributions


class AttributionMatcher:
    """Fetches a shop's sessions and orders for a window and matches them."""

    def __init__(
        self,
        session_store: SessionReader,
        order_feed: OrderReader,
        claim_store: Optional[ClaimReader] = None,
        policy: Optional[MatchPolicy] = None,
    ) -> None:
        """Initialize matcher.

        Args:
            session_store: Source of quiz sessions
            order_feed: Source of store orders
            claim_store: Source of sessions claimed in settled windows
            policy: Matching rules
        """
        self.session_store = session_store
        self.order_feed = order_feed
        self.claim_store = claim_store
        self.policy = policy or MatchPolicy()

    async def fetch_snapshot(
        self, shop: str, window_start: datetime, window_end: datetime
    ) -> AttributionSnapshot:
        """Read the candidate sessions and orders for one window.

        Raises:
            InvalidWindow: Window is empty, inverted or too wide
            UpstreamUnavailable: Session store or order feed failed
        """
        window = validate_window(window_start, window_end, self.policy.max_window_span)
        session_start = window.start - self.policy.max_attribution_delay

        sessions = self.session_store.list_sessions(shop, session_start, window.end)
        claimed: set[str] = set()
        if self.claim_store is not None:
            claimed = self.claim_store.list_claimed_session_ids(
                shop, session_start, window.start
            )
        orders = await self.order_feed.list_orders(shop, window.start, window.end)

        in_window = [
            order
            for order in orders
            if order.shop == shop and window.contains(order.created_at)
        ]
        if len(in_window) != len(orders):
            logger.debug(
                "Dropped %s orders outside window for shop=%s",
                len(orders) - len(in_window),
                shop,
            )

        logger.info(
            "Snapshot for shop=%s [%s, %s): %s sessions, %s orders, %s claimed",
            shop,
            window.start.isoformat(),
            window.end.isoformat(),
            len(sessions),
            len(in_window),
            len(claimed),
        )

        return AttributionSnapshot(
            shop=shop,
            window=window,
            sessions=tuple(sessions),
            orders=tuple(in_window),
            claimed_session_ids=frozenset(claimed),
        )

    def match(self, snapshot: AttributionSnapshot) -> list[Attribution]:
        attributions = match_orders(snapshot, self.policy)
        matched = sum(1 for attribution in attributions if attribution.is_matched)
        logger.info(
            "Matched %s of %s orders for shop=%s",
            matched,
            len(attributions),
            snapshot.shop,
        )
        return attributions

    async def attribute(
        self, shop: str, window_start: datetime, window_end: datetime
    ) -> list[Attribution]:
        """Attribute the shop's orders created in [window_start, window_end)."""
        snapshot = await self.fetch_snapshot(shop, window_start, window_end)
        return self.match(snapshot)
