"""Unit tests for quiz performance reports."""
from datetime import date, datetime, timedelta, timezone

import pytest

from src.quiz_analytics.reporting import build_quiz_report
from src.quiz_analytics.schemas.models import SummaryDelta
from src.quiz_analytics.storage import AnalyticsStore, SessionStore, connect, init_database


SHOP = "test-shop.myshopify.com"
T0 = datetime(2024, 6, 1, 9, 0, tzinfo=timezone.utc)


@pytest.fixture
def stores(tmp_path):
    db_path = tmp_path / "quiz_analytics.db"
    init_database(db_path)
    conn = connect(db_path)
    yield SessionStore(conn), AnalyticsStore(conn)
    conn.close()


def test_report_combines_sessions_answers_and_summaries(stores):
    sessions, analytics = stores

    first = sessions.start_session(SHOP, "quiz-1", started_at=T0)
    second = sessions.start_session(SHOP, "quiz-1", started_at=T0 + timedelta(hours=1))
    sessions.start_session(SHOP, "quiz-1", started_at=T0 + timedelta(hours=2))
    sessions.start_session(SHOP, "quiz-2", started_at=T0)

    sessions.record_answer(first.session_id, "q-skin", "dry", T0 + timedelta(seconds=10))
    sessions.record_answer(
        second.session_id, "q-skin", "oily", T0 + timedelta(hours=1, seconds=10)
    )
    sessions.record_answer(
        second.session_id, "q-concern", "acne", T0 + timedelta(hours=1, seconds=20)
    )
    sessions.complete_session(first.session_id, T0 + timedelta(seconds=60))
    sessions.complete_session(second.session_id, T0 + timedelta(hours=1, seconds=120))

    analytics.apply_summary_delta(
        SummaryDelta(
            shop=SHOP,
            quiz_id="quiz-1",
            summary_date=date(2024, 6, 1),
            session_count=3,
            completed_count=2,
            attributed_order_count=1,
            attributed_revenue=80.5,
        )
    )
    analytics.apply_summary_delta(
        SummaryDelta(
            shop=SHOP,
            quiz_id="quiz-1",
            summary_date=date(2024, 5, 1),
            session_count=9,
        )
    )

    report = build_quiz_report(
        sessions,
        analytics,
        SHOP,
        "quiz-1",
        since=T0 - timedelta(days=7),
        until=T0 + timedelta(days=1),
    )

    assert report.total_sessions == 3
    assert report.completed_sessions == 2
    assert report.completion_rate == 67
    assert report.average_completion_seconds == 90
    assert report.attributed_orders == 1
    assert report.attributed_revenue == 80.5

    assert [q.question_id for q in report.questions] == ["q-concern", "q-skin"]
    skin = report.questions[1]
    assert skin.total_responses == 2
    assert [(a.answer_id, a.selection_percentage) for a in skin.answers] == [
        ("dry", 50),
        ("oily", 50),
    ]

    [day] = report.daily
    assert day.summary_date == date(2024, 6, 1)
    assert day.completion_rate == 67
    assert day.conversion_rate == 50


def test_empty_report(stores):
    sessions, analytics = stores

    report = build_quiz_report(
        sessions, analytics, SHOP, "quiz-1", since=T0, until=T0 + timedelta(days=1)
    )

    assert report.total_sessions == 0
    assert report.completion_rate == 0
    assert report.average_completion_seconds == 0
    assert report.questions == []
    assert report.daily == []
