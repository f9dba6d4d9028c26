"""Unit tests for the SQLite session store."""
from datetime import datetime, timedelta, timezone

import pytest

from src.quiz_analytics.storage import (
    SessionNotFoundError,
    SessionStore,
    connect,
    init_database,
)
from src.quiz_analytics.sync.exceptions import UpstreamUnavailable


SHOP = "test-shop.myshopify.com"
T0 = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def sessions(tmp_path):
    db_path = tmp_path / "quiz_analytics.db"
    init_database(db_path)
    conn = connect(db_path)
    yield SessionStore(conn)
    conn.close()


def test_init_database_is_repeatable(tmp_path):
    db_path = tmp_path / "nested" / "quiz_analytics.db"

    init_database(db_path)
    init_database(db_path)

    conn = connect(db_path)
    versions = conn.execute("SELECT version FROM schema_version").fetchall()
    conn.close()
    assert versions == [(1,)]


def test_start_session_generates_id(sessions):
    session = sessions.start_session(SHOP, "quiz-1", started_at=T0, page_url="/pages/quiz")

    assert session.session_id.startswith("session-")
    assert not session.is_completed
    assert sessions.get_session(session.session_id) == session


def test_list_sessions_half_open_and_ordered(sessions):
    """Test range is [start, end) ordered by start time then id."""
    sessions.start_session(SHOP, "quiz-1", started_at=T0 + timedelta(hours=1), session_id="b")
    sessions.start_session(SHOP, "quiz-1", started_at=T0 + timedelta(hours=1), session_id="a")
    sessions.start_session(SHOP, "quiz-2", started_at=T0, session_id="c")
    sessions.start_session(SHOP, "quiz-1", started_at=T0 + timedelta(hours=2), session_id="d")
    sessions.start_session(
        "other.myshopify.com", "quiz-1", started_at=T0, session_id="e"
    )

    listed = sessions.list_sessions(SHOP, T0, T0 + timedelta(hours=2))
    quiz_only = sessions.list_sessions(SHOP, T0, T0 + timedelta(hours=3), quiz_id="quiz-1")

    assert [s.session_id for s in listed] == ["c", "a", "b"]
    assert [s.session_id for s in quiz_only] == ["a", "b", "d"]


def test_record_answer_is_immutable(sessions):
    session = sessions.start_session(SHOP, "quiz-1", started_at=T0)

    first = sessions.record_answer(
        session.session_id, "q1", "a1", selected_at=T0 + timedelta(seconds=5)
    )
    second = sessions.record_answer(
        session.session_id, "q1", "a2", selected_at=T0 + timedelta(seconds=9)
    )

    assert first is True
    assert second is False
    [selection] = sessions.list_answer_selections(session.session_id)
    assert selection.answer_id == "a1"


def test_record_answer_before_start_rejected(sessions):
    session = sessions.start_session(SHOP, "quiz-1", started_at=T0)

    with pytest.raises(ValueError):
        sessions.record_answer(
            session.session_id, "q1", "a1", selected_at=T0 - timedelta(seconds=1)
        )


def test_unknown_session_raises(sessions):
    with pytest.raises(SessionNotFoundError):
        sessions.record_answer("missing", "q1", "a1")

    with pytest.raises(SessionNotFoundError):
        sessions.complete_session("missing")


def test_complete_session_keeps_first_completion(sessions):
    session = sessions.start_session(SHOP, "quiz-1", started_at=T0)

    done = sessions.complete_session(session.session_id, T0 + timedelta(minutes=3))
    again = sessions.complete_session(session.session_id, T0 + timedelta(minutes=9))

    assert done.is_completed
    assert again.completed_at == T0 + timedelta(minutes=3)
    assert sessions.get_session(session.session_id).completed_at == done.completed_at


def test_complete_session_before_start_rejected(sessions):
    session = sessions.start_session(SHOP, "quiz-1", started_at=T0)

    with pytest.raises(ValueError):
        sessions.complete_session(session.session_id, T0 - timedelta(minutes=1))

    assert not sessions.get_session(session.session_id).is_completed


def test_link_customer_sets_once(sessions):
    session = sessions.start_session(SHOP, "quiz-1", started_at=T0)

    linked = sessions.link_customer(session.session_id, "c1")
    same = sessions.link_customer(session.session_id, "c1")

    assert linked.customer_id == "c1"
    assert same.customer_id == "c1"
    with pytest.raises(ValueError):
        sessions.link_customer(session.session_id, "c2")


def test_read_failure_surfaces_as_upstream_unavailable(sessions):
    sessions.db_conn.close()

    with pytest.raises(UpstreamUnavailable) as exc_info:
        sessions.list_sessions(SHOP, T0, T0 + timedelta(days=1))

    assert exc_info.value.source == "session_store"
