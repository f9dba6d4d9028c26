"""Analytics rollup of quiz sessions and attributed orders.

Summary rows are keyed by (shop, quiz, date of session start) and only ever
incremented. Each counted source fact (a session start, a completion, an
order attribution) is remembered in processed_facts inside the same
transaction as the increment, so re-processing a window adds nothing.

Completions are counted from the sessions in a pass's snapshot, which reaches
back max_attribution_delay before the window start. A session completed more
than that long after it started is never seen completed and stays out of
completed_count.
"""
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date, timezone, tzinfo
from typing import Iterable, Mapping, Optional, Union

from ..schemas.models import Attribution, QuizSession, SummaryDelta
from .exceptions import InconsistentAttribution


logger = logging.getLogger(__name__)


FACT_SESSION_START = "session_start"
FACT_SESSION_COMPLETED = "session_completed"
FACT_ORDER = "order"


@dataclass(frozen=True)
class CountedOrder:
    """Summary row an order was counted into, and for how much."""

    quiz_id: str
    summary_date: date
    revenue: float


@dataclass
class ProcessedFacts:
    """Facts already reflected in summary rows."""

    started: set[str] = field(default_factory=set)
    completed: set[str] = field(default_factory=set)
    orders: dict[tuple[str, str], CountedOrder] = field(default_factory=dict)

    def update(self, other: "ProcessedFacts") -> None:
        self.started |= other.started
        self.completed |= other.completed
        self.orders.update(other.orders)


@dataclass(frozen=True)
class FactChange:
    """Insert, replace or delete of one processed fact."""

    shop: str
    kind: str
    fact_id: str
    quiz_id: Optional[str] = None
    summary_date: Optional[date] = None
    revenue: float = 0.0
    delete: bool = False


@dataclass
class SummaryPlan:
    """Deltas to apply plus the facts that justify them."""

    deltas: list[SummaryDelta]
    facts: list[FactChange]


SessionSnapshots = Union[Mapping[str, QuizSession], Iterable[QuizSession]]


def _index_sessions(session_snapshots: SessionSnapshots) -> dict[str, QuizSession]:
    if isinstance(session_snapshots, Mapping):
        return dict(session_snapshots)
    return {session.session_id: session for session in session_snapshots}


def summary_date_for(session: QuizSession, tz: tzinfo = timezone.utc) -> date:
    """Calendar date a session's facts are reported under."""
    return session.started_at.astimezone(tz).date()


def check_consistency(
    attributions: Iterable[Attribution], sessions: Mapping[str, QuizSession]
) -> None:
    """Ensure every matched attribution points into the session snapshot.

    Raises:
        InconsistentAttribution: Snapshot is missing a matched session
    """
    for attribution in attributions:
        if not attribution.is_matched:
            continue
        session = sessions.get(attribution.matched_session_id)
        if session is None or session.shop != attribution.shop:
            raise InconsistentAttribution(
                attribution.order_id, attribution.matched_session_id
            )


def plan_summary_deltas(
    attributions: Iterable[Attribution],
    sessions: Mapping[str, QuizSession],
    processed: ProcessedFacts,
    tz: tzinfo = timezone.utc,
) -> SummaryPlan:
    """Compute summary increments for facts not yet counted.

    Args:
        attributions: Attribution results of a pass
        sessions: Session snapshot keyed by session id
        processed: Facts already counted for the shops involved
        tz: Timezone that decides a session's summary date

    Returns:
        Non-zero deltas sorted by key, and the fact changes to persist
    """
    counters: dict[tuple[str, str, date], list] = defaultdict(lambda: [0, 0, 0, 0.0])
    facts: list[FactChange] = []
    started = set(processed.started)
    completed = set(processed.completed)
    counted_orders = dict(processed.orders)

    for session_id in sorted(sessions):
        session = sessions[session_id]
        summary_date = summary_date_for(session, tz)
        key = (session.shop, session.quiz_id, summary_date)

        if session_id not in started:
            started.add(session_id)
            counters[key][0] += 1
            facts.append(
                FactChange(
                    session.shop,
                    FACT_SESSION_START,
                    session_id,
                    session.quiz_id,
                    summary_date,
                )
            )

        if session.is_completed and session_id not in completed:
            completed.add(session_id)
            counters[key][1] += 1
            facts.append(
                FactChange(
                    session.shop,
                    FACT_SESSION_COMPLETED,
                    session_id,
                    session.quiz_id,
                    summary_date,
                )
            )

    for attribution in sorted(
        attributions, key=lambda a: (a.shop, a.order_created_at, a.order_id)
    ):
        order_key = (attribution.shop, attribution.order_id)
        previous = counted_orders.get(order_key)

        current: Optional[CountedOrder] = None
        if attribution.is_matched:
            session = sessions[attribution.matched_session_id]
            current = CountedOrder(
                quiz_id=session.quiz_id,
                summary_date=summary_date_for(session, tz),
                revenue=round(attribution.order_total, 2),
            )

        if previous == current:
            continue

        if previous is not None:
            # Attribution moved or vanished: take the old credit back.
            old_key = (attribution.shop, previous.quiz_id, previous.summary_date)
            counters[old_key][2] -= 1
            counters[old_key][3] -= previous.revenue

        if current is not None:
            new_key = (attribution.shop, current.quiz_id, current.summary_date)
            counters[new_key][2] += 1
            counters[new_key][3] += current.revenue
            counted_orders[order_key] = current
            facts.append(
                FactChange(
                    attribution.shop,
                    FACT_ORDER,
                    attribution.order_id,
                    current.quiz_id,
                    current.summary_date,
                    current.revenue,
                )
            )
        else:
            del counted_orders[order_key]
            facts.append(
                FactChange(attribution.shop, FACT_ORDER, attribution.order_id, delete=True)
            )

    deltas = []
    for (shop, quiz_id, summary_date), values in sorted(counters.items()):
        delta = SummaryDelta(
            shop=shop,
            quiz_id=quiz_id,
            summary_date=summary_date,
            session_count=values[0],
            completed_count=values[1],
            attributed_order_count=values[2],
            attributed_revenue=round(values[3], 2),
        )
        if not delta.is_zero:
            deltas.append(delta)

    return SummaryPlan(deltas=deltas, facts=facts)


class AnalyticsAggregator:
    """Applies attribution results and session facts to summary rows."""

    def __init__(self, store, tz: tzinfo = timezone.utc) -> None:
        """Initialize aggregator.

        Args:
            store: AnalyticsStore (transaction, processed facts, summary upsert)
            tz: Reporting timezone for summary dates
        """
        self.store = store
        self.tz = tz

    def apply_attributions(
        self,
        attributions: Iterable[Attribution],
        session_snapshots: SessionSnapshots,
    ) -> list[SummaryDelta]:
        """Fold a pass's attributions and sessions into the summary rows.

        Args:
            attributions: Matcher output
            session_snapshots: Sessions the matcher saw (mapping or iterable)

        Returns:
            Deltas that were applied

        Raises:
            InconsistentAttribution: A matched session is not in the snapshot
        """
        attributions = list(attributions)
        sessions = _index_sessions(session_snapshots)
        check_consistency(attributions, sessions)

        shops = {session.shop for session in sessions.values()}
        shops |= {attribution.shop for attribution in attributions}

        with self.store.transaction():
            processed = ProcessedFacts()
            for shop in sorted(shops):
                processed.update(
                    self.store.load_processed_facts(
                        shop,
                        [s.session_id for s in sessions.values() if s.shop == shop],
                        [a.order_id for a in attributions if a.shop == shop],
                    )
                )

            plan = plan_summary_deltas(attributions, sessions, processed, self.tz)

            self.store.record_processed_facts(plan.facts)
            for delta in plan.deltas:
                self.store.increment_summary(delta)

        logger.info(
            "Applied %s summary deltas from %s new facts (%s attributions, %s sessions)",
            len(plan.deltas),
            len(plan.facts),
            len(attributions),
            len(sessions),
        )
        return plan.deltas
