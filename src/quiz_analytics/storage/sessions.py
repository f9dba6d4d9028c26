"""SQLite-backed store for quiz sessions and answer selections."""
import logging
import sqlite3
import uuid
from datetime import datetime, timezone
from typing import Optional

from ..schemas.models import AnswerSelection, QuizSession, ensure_utc
from ..sync.exceptions import UpstreamUnavailable
from .schema import from_db_timestamp, to_db_timestamp


logger = logging.getLogger(__name__)


_SESSION_COLUMNS = """
    session_id, shop, quiz_id, started_at, completed_at,
    is_completed, customer_id, page_url, user_agent
"""


class SessionNotFoundError(LookupError):
    """Raised when a session id is unknown to the store."""

    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"Quiz session not found: {session_id}")


def _row_to_session(row: tuple) -> QuizSession:
    (
        session_id,
        shop,
        quiz_id,
        started_at,
        completed_at,
        is_completed,
        customer_id,
        page_url,
        user_agent,
    ) = row
    return QuizSession(
        session_id=session_id,
        shop=shop,
        quiz_id=quiz_id,
        started_at=from_db_timestamp(started_at),
        completed_at=from_db_timestamp(completed_at) if completed_at else None,
        is_completed=bool(is_completed),
        customer_id=customer_id,
        page_url=page_url,
        user_agent=user_agent,
    )


class SessionStore:
    """Read and lifecycle operations over quiz sessions.

    Sessions are append-only while in progress, then marked completed.
    Nothing here deletes a session.
    """

    def __init__(self, db_conn: sqlite3.Connection) -> None:
        """Initialize session store.

        Args:
            db_conn: SQLite connection
        """
        self.db_conn = db_conn

    def list_sessions(
        self,
        shop: str,
        start: datetime,
        end: datetime,
        quiz_id: Optional[str] = None,
    ) -> list[QuizSession]:
        """List sessions of a shop started in [start, end).

        Args:
            shop: Shop domain
            start: Inclusive lower bound on started_at
            end: Exclusive upper bound on started_at
            quiz_id: Optional quiz filter

        Returns:
            Sessions ordered by started_at, then session_id

        Raises:
            UpstreamUnavailable: If the database cannot be read
        """
        query = f"""
            SELECT {_SESSION_COLUMNS}
            FROM quiz_sessions
            WHERE shop=? AND started_at>=? AND started_at<?
        """
        params: list = [shop, to_db_timestamp(start), to_db_timestamp(end)]
        if quiz_id is not None:
            query += " AND quiz_id=?"
            params.append(quiz_id)
        query += " ORDER BY started_at, session_id"

        try:
            rows = self.db_conn.execute(query, params).fetchall()
        except sqlite3.Error as exc:
            raise UpstreamUnavailable("session_store", str(exc)) from exc

        return [_row_to_session(row) for row in rows]

    def list_answer_selections(self, session_id: str) -> list[AnswerSelection]:
        """List answers recorded for a session, oldest first."""
        try:
            rows = self.db_conn.execute(
                """
                SELECT session_id, question_id, answer_id, selected_at
                FROM answer_selections
                WHERE session_id=?
                ORDER BY selected_at, question_id
                """,
                (session_id,),
            ).fetchall()
        except sqlite3.Error as exc:
            raise UpstreamUnavailable("session_store", str(exc)) from exc

        return [
            AnswerSelection(
                session_id=row[0],
                question_id=row[1],
                answer_id=row[2],
                selected_at=from_db_timestamp(row[3]),
            )
            for row in rows
        ]

    def get_session(self, session_id: str) -> Optional[QuizSession]:
        row = self.db_conn.execute(
            f"SELECT {_SESSION_COLUMNS} FROM quiz_sessions WHERE session_id=?",
            (session_id,),
        ).fetchone()
        return _row_to_session(row) if row else None

    def _require_session(self, session_id: str) -> QuizSession:
        session = self.get_session(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    def start_session(
        self,
        shop: str,
        quiz_id: str,
        started_at: Optional[datetime] = None,
        customer_id: Optional[str] = None,
        page_url: Optional[str] = None,
        user_agent: Optional[str] = None,
        session_id: Optional[str] = None,
    ) -> QuizSession:
        """Create a new in-progress session.

        Args:
            shop: Shop domain
            quiz_id: Quiz being taken
            started_at: Start time (defaults to now)
            customer_id: Customer reference if already known
            page_url: Storefront page the quiz was opened on
            user_agent: Shopper's user agent
            session_id: Explicit id (generated when omitted)

        Returns:
            The stored session
        """
        session = QuizSession(
            session_id=session_id or f"session-{uuid.uuid4().hex}",
            shop=shop,
            quiz_id=quiz_id,
            started_at=started_at or datetime.now(timezone.utc),
            customer_id=customer_id,
            page_url=page_url,
            user_agent=user_agent,
        )

        self.db_conn.execute(
            """
            INSERT INTO quiz_sessions (
                session_id, shop, quiz_id, started_at,
                is_completed, customer_id, page_url, user_agent
            )
            VALUES (?, ?, ?, ?, 0, ?, ?, ?)
            """,
            (
                session.session_id,
                session.shop,
                session.quiz_id,
                to_db_timestamp(session.started_at),
                session.customer_id,
                session.page_url,
                session.user_agent,
            ),
        )
        self.db_conn.commit()

        logger.debug(
            "Started session %s for quiz=%s shop=%s",
            session.session_id,
            quiz_id,
            shop,
        )
        return session

    def record_answer(
        self,
        session_id: str,
        question_id: str,
        answer_id: str,
        selected_at: Optional[datetime] = None,
    ) -> bool:
        """Record an answer selection.

        Selections are immutable: a second answer to the same question is
        ignored.

        Returns:
            True if the selection was stored, False if one already existed

        Raises:
            SessionNotFoundError: Unknown session
            ValueError: selected_at precedes the session start
        """
        session = self._require_session(session_id)
        selected_at = ensure_utc(selected_at or datetime.now(timezone.utc))

        if selected_at < session.started_at:
            raise ValueError(
                f"Selection at {selected_at.isoformat()} precedes session start "
                f"{session.started_at.isoformat()}"
            )

        cursor = self.db_conn.execute(
            """
            INSERT INTO answer_selections (
                session_id, question_id, answer_id, selected_at
            )
            VALUES (?, ?, ?, ?)
            ON CONFLICT(session_id, question_id) DO NOTHING
            """,
            (session_id, question_id, answer_id, to_db_timestamp(selected_at)),
        )
        self.db_conn.commit()

        if cursor.rowcount == 0:
            logger.info(
                "Ignoring repeat answer for session=%s question=%s",
                session_id,
                question_id,
            )
            return False
        return True

    def complete_session(
        self, session_id: str, completed_at: Optional[datetime] = None
    ) -> QuizSession:
        """Mark a session completed. Completing twice keeps the first time."""
        session = self._require_session(session_id)
        if session.is_completed:
            logger.debug("Session %s already completed", session_id)
            return session

        completed_at = ensure_utc(completed_at or datetime.now(timezone.utc))
        updated = QuizSession(
            **{
                **session.model_dump(),
                "is_completed": True,
                "completed_at": completed_at,
            }
        )

        self.db_conn.execute(
            """
            UPDATE quiz_sessions
            SET is_completed=1, completed_at=?
            WHERE session_id=?
            """,
            (to_db_timestamp(completed_at), session_id),
        )
        self.db_conn.commit()
        return updated

    def link_customer(self, session_id: str, customer_id: str) -> QuizSession:
        """Attach a customer reference to a session (set once).

        Raises:
            SessionNotFoundError: Unknown session
            ValueError: A different customer is already linked
        """
        session = self._require_session(session_id)
        if session.customer_id == customer_id:
            return session
        if session.customer_id is not None:
            raise ValueError(
                f"Session {session_id} already linked to customer "
                f"{session.customer_id}"
            )

        self.db_conn.execute(
            "UPDATE quiz_sessions SET customer_id=? WHERE session_id=?",
            (customer_id, session_id),
        )
        self.db_conn.commit()
        return session.model_copy(update={"customer_id": customer_id})
