"""SQLite persistence for attributions, summary rows, facts and watermarks."""
import logging
import sqlite3
from contextlib import contextmanager
from datetime import date, datetime
from typing import Iterable, Iterator, Optional

from ..schemas.models import AnalyticsSummary, Attribution, AttributionTier, SummaryDelta
from ..sync.aggregator import (
    FACT_ORDER,
    FACT_SESSION_COMPLETED,
    FACT_SESSION_START,
    CountedOrder,
    FactChange,
    ProcessedFacts,
)
from ..sync.exceptions import UpstreamUnavailable
from .schema import from_db_timestamp, to_db_timestamp


logger = logging.getLogger(__name__)


# SQLite's default host parameter limit is 999.
IN_CLAUSE_CHUNK_SIZE = 500


def chunk_items(items: list, chunk_size: int) -> Iterator[list]:
    """Yield items in fixed-size chunks."""
    if chunk_size <= 0:
        raise ValueError("chunk_size must be positive")
    for idx in range(0, len(items), chunk_size):
        yield items[idx : idx + chunk_size]


class AnalyticsStore:
    """Upsert-by-key storage behind the attribution sync.

    Methods documented as "inside transaction()" do not commit; everything
    else commits its own write.
    """

    def __init__(self, db_conn: sqlite3.Connection) -> None:
        """Initialize analytics store.

        Args:
            db_conn: SQLite connection
        """
        self.db_conn = db_conn

    @contextmanager
    def transaction(self) -> Iterator["AnalyticsStore"]:
        """Run the enclosed writes as one atomic SQLite transaction.

        Not reentrant: the connection must have no open transaction.

        Raises:
            RuntimeError: A transaction is already open on the connection
        """
        if self.db_conn.in_transaction:
            raise RuntimeError(
                "AnalyticsStore.transaction() cannot nest inside an open transaction"
            )
        self.db_conn.execute("BEGIN IMMEDIATE")
        try:
            yield self
        except BaseException:
            self.db_conn.rollback()
            raise
        else:
            self.db_conn.commit()

    # Attributions

    def _write_attribution(self, attribution: Attribution) -> None:
        self.db_conn.execute(
            """
            INSERT INTO order_attributions (
                order_id, shop, order_created_at,
                matched_session_id, quiz_id, tier, matched_at,
                order_total, currency
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(order_id, shop)
            DO UPDATE SET
                order_created_at=excluded.order_created_at,
                matched_session_id=excluded.matched_session_id,
                quiz_id=excluded.quiz_id,
                tier=excluded.tier,
                matched_at=excluded.matched_at,
                order_total=excluded.order_total,
                currency=excluded.currency,
                updated_at=CURRENT_TIMESTAMP
            """,
            (
                attribution.order_id,
                attribution.shop,
                to_db_timestamp(attribution.order_created_at),
                attribution.matched_session_id,
                attribution.quiz_id,
                attribution.tier.value,
                to_db_timestamp(attribution.matched_at),
                attribution.order_total,
                attribution.currency,
            ),
        )

    def upsert_attribution(self, attribution: Attribution) -> None:
        """Insert or overwrite the attribution of one order."""
        with self.transaction():
            self._write_attribution(attribution)

    def upsert_attributions(self, attributions: Iterable[Attribution]) -> int:
        """Insert or overwrite many attributions atomically.

        Returns:
            Number of attributions written
        """
        count = 0
        with self.transaction():
            for attribution in attributions:
                self._write_attribution(attribution)
                count += 1
        logger.debug("Persisted %s order attributions", count)
        return count

    def get_attribution(self, shop: str, order_id: str) -> Optional[Attribution]:
        row = self.db_conn.execute(
            """
            SELECT order_id, shop, order_created_at, matched_session_id,
                   quiz_id, tier, matched_at, order_total, currency
            FROM order_attributions
            WHERE shop=? AND order_id=?
            """,
            (shop, order_id),
        ).fetchone()
        if row is None:
            return None

        return Attribution(
            order_id=row[0],
            shop=row[1],
            order_created_at=from_db_timestamp(row[2]),
            matched_session_id=row[3],
            quiz_id=row[4],
            tier=AttributionTier(row[5]),
            matched_at=from_db_timestamp(row[6]),
            order_total=row[7],
            currency=row[8] or "USD",
        )

    def list_claimed_session_ids(
        self, shop: str, start: datetime, end: datetime
    ) -> set[str]:
        """Sessions credited to orders created in [start, end).

        Raises:
            UpstreamUnavailable: If the database cannot be read
        """
        try:
            rows = self.db_conn.execute(
                """
                SELECT DISTINCT matched_session_id
                FROM order_attributions
                WHERE shop=?
                  AND matched_session_id IS NOT NULL
                  AND order_created_at>=? AND order_created_at<?
                """,
                (shop, to_db_timestamp(start), to_db_timestamp(end)),
            ).fetchall()
        except sqlite3.Error as exc:
            raise UpstreamUnavailable("attribution_store", str(exc)) from exc
        return {row[0] for row in rows}

    # Processed facts and summary rows

    def load_processed_facts(
        self,
        shop: str,
        session_ids: list[str],
        order_ids: list[str],
    ) -> ProcessedFacts:
        """Load which of the given sessions and orders are already counted."""
        facts = ProcessedFacts()

        for chunk in chunk_items(list(session_ids), IN_CLAUSE_CHUNK_SIZE):
            placeholders = ",".join("?" for _ in chunk)
            rows = self.db_conn.execute(
                f"""
                SELECT fact_kind, fact_id
                FROM processed_facts
                WHERE shop=? AND fact_kind IN (?, ?) AND fact_id IN ({placeholders})
                """,
                (shop, FACT_SESSION_START, FACT_SESSION_COMPLETED, *chunk),
            ).fetchall()
            for kind, fact_id in rows:
                if kind == FACT_SESSION_START:
                    facts.started.add(fact_id)
                else:
                    facts.completed.add(fact_id)

        for chunk in chunk_items(list(order_ids), IN_CLAUSE_CHUNK_SIZE):
            placeholders = ",".join("?" for _ in chunk)
            rows = self.db_conn.execute(
                f"""
                SELECT fact_id, quiz_id, summary_date, revenue
                FROM processed_facts
                WHERE shop=? AND fact_kind=? AND fact_id IN ({placeholders})
                """,
                (shop, FACT_ORDER, *chunk),
            ).fetchall()
            for fact_id, quiz_id, summary_date, revenue in rows:
                facts.orders[(shop, fact_id)] = CountedOrder(
                    quiz_id=quiz_id,
                    summary_date=date.fromisoformat(summary_date),
                    revenue=round(revenue, 2),
                )

        return facts

    def record_processed_facts(self, changes: Iterable[FactChange]) -> None:
        """Persist fact changes. Call inside transaction()."""
        for change in changes:
            if change.delete:
                self.db_conn.execute(
                    """
                    DELETE FROM processed_facts
                    WHERE shop=? AND fact_kind=? AND fact_id=?
                    """,
                    (change.shop, change.kind, change.fact_id),
                )
                continue

            self.db_conn.execute(
                """
                INSERT INTO processed_facts (
                    shop, fact_kind, fact_id, quiz_id, summary_date, revenue
                )
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(shop, fact_kind, fact_id)
                DO UPDATE SET
                    quiz_id=excluded.quiz_id,
                    summary_date=excluded.summary_date,
                    revenue=excluded.revenue,
                    processed_at=CURRENT_TIMESTAMP
                """,
                (
                    change.shop,
                    change.kind,
                    change.fact_id,
                    change.quiz_id,
                    change.summary_date.isoformat(),
                    change.revenue,
                ),
            )

    def increment_summary(self, delta: SummaryDelta) -> None:
        """Add a delta to its summary row, creating it if absent.

        Call inside transaction().
        """
        self.db_conn.execute(
            """
            INSERT INTO analytics_summaries (
                shop, quiz_id, summary_date,
                session_count, completed_count,
                attributed_order_count, attributed_revenue
            )
            VALUES (?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(shop, quiz_id, summary_date)
            DO UPDATE SET
                session_count=session_count + excluded.session_count,
                completed_count=completed_count + excluded.completed_count,
                attributed_order_count=
                    attributed_order_count + excluded.attributed_order_count,
                attributed_revenue=
                    ROUND(attributed_revenue + excluded.attributed_revenue, 2),
                updated_at=CURRENT_TIMESTAMP
            """,
            (
                delta.shop,
                delta.quiz_id,
                delta.summary_date.isoformat(),
                delta.session_count,
                delta.completed_count,
                delta.attributed_order_count,
                round(delta.attributed_revenue, 2),
            ),
        )

    def apply_summary_delta(self, delta: SummaryDelta) -> None:
        """Increment one summary row in its own transaction."""
        with self.transaction():
            self.increment_summary(delta)

    def get_summary(
        self, shop: str, quiz_id: str, summary_date: date
    ) -> Optional[AnalyticsSummary]:
        rows = self._select_summaries(
            "shop=? AND quiz_id=? AND summary_date=?",
            (shop, quiz_id, summary_date.isoformat()),
        )
        return rows[0] if rows else None

    def list_summaries(
        self,
        shop: str,
        quiz_id: Optional[str] = None,
        since: Optional[date] = None,
    ) -> list[AnalyticsSummary]:
        """List summary rows of a shop, oldest date first."""
        clauses = ["shop=?"]
        params: list = [shop]
        if quiz_id is not None:
            clauses.append("quiz_id=?")
            params.append(quiz_id)
        if since is not None:
            clauses.append("summary_date>=?")
            params.append(since.isoformat())
        return self._select_summaries(" AND ".join(clauses), tuple(params))

    def _select_summaries(self, where: str, params: tuple) -> list[AnalyticsSummary]:
        rows = self.db_conn.execute(
            f"""
            SELECT shop, quiz_id, summary_date, session_count, completed_count,
                   attributed_order_count, attributed_revenue
            FROM analytics_summaries
            WHERE {where}
            ORDER BY summary_date, quiz_id
            """,
            params,
        ).fetchall()
        return [
            AnalyticsSummary(
                shop=row[0],
                quiz_id=row[1],
                summary_date=date.fromisoformat(row[2]),
                session_count=row[3],
                completed_count=row[4],
                attributed_order_count=row[5],
                attributed_revenue=row[6],
            )
            for row in rows
        ]

    # Watermarks and run log

    def get_watermark(self, shop: str) -> Optional[datetime]:
        """Exclusive end of the last successfully reconciled window."""
        row = self.db_conn.execute(
            "SELECT window_end FROM sync_watermarks WHERE shop=?",
            (shop,),
        ).fetchone()
        return from_db_timestamp(row[0]) if row else None

    def set_watermark(self, shop: str, window_end: datetime) -> None:
        self.db_conn.execute(
            """
            INSERT INTO sync_watermarks (shop, window_end)
            VALUES (?, ?)
            ON CONFLICT(shop)
            DO UPDATE SET
                window_end=excluded.window_end,
                updated_at=CURRENT_TIMESTAMP
            """,
            (shop, to_db_timestamp(window_end)),
        )
        self.db_conn.commit()

    def _record_run(
        self,
        shop: str,
        window_start: datetime,
        window_end: datetime,
        status: str,
        details: Optional[str],
    ) -> None:
        self.db_conn.execute(
            """
            INSERT INTO sync_runs (shop, window_start, window_end, status, details)
            VALUES (?, ?, ?, ?, ?)
            """,
            (
                shop,
                to_db_timestamp(window_start),
                to_db_timestamp(window_end),
                status,
                details,
            ),
        )
        self.db_conn.commit()

    def record_sync_success(
        self,
        shop: str,
        window_start: datetime,
        window_end: datetime,
        details: Optional[str] = None,
    ) -> None:
        """Record successful sync pass."""
        self._record_run(shop, window_start, window_end, "success", details)

    def record_sync_failure(
        self,
        shop: str,
        window_start: datetime,
        window_end: datetime,
        error: str,
    ) -> None:
        """Record failed sync pass."""
        self._record_run(shop, window_start, window_end, "failed", error)

    def last_sync_status(self, shop: str) -> Optional[str]:
        row = self.db_conn.execute(
            """
            SELECT status FROM sync_runs
            WHERE shop=?
            ORDER BY id DESC
            LIMIT 1
            """,
            (shop,),
        ).fetchone()
        return row[0] if row else None
