"""Quiz performance report built from sessions, answers and summary rows."""
import logging
from collections import Counter, defaultdict
from datetime import datetime, timezone, tzinfo
from typing import Optional

from .schemas.models import (
    AnswerStat,
    DailyPerformance,
    QuestionStat,
    QuizReport,
    ensure_utc,
)
from .storage.analytics import AnalyticsStore
from .storage.sessions import SessionStore


logger = logging.getLogger(__name__)


def _percent(part: int, whole: int) -> int:
    return round(part / whole * 100) if whole > 0 else 0


def build_quiz_report(
    session_store: SessionStore,
    analytics_store: AnalyticsStore,
    shop: str,
    quiz_id: str,
    since: datetime,
    until: Optional[datetime] = None,
    tz: tzinfo = timezone.utc,
) -> QuizReport:
    """Summarize one quiz over [since, until).

    Session totals and answer popularity come from raw sessions; daily rows
    and attributed revenue come from the rolled-up summaries.

    Args:
        session_store: Session store
        analytics_store: Analytics store
        shop: Shop domain
        quiz_id: Quiz to report on
        since: Start of the reporting period
        until: End of the period (defaults to now)
        tz: Timezone of the summary dates

    Returns:
        QuizReport
    """
    since = ensure_utc(since)
    until = ensure_utc(until or datetime.now(timezone.utc))

    sessions = session_store.list_sessions(shop, since, until, quiz_id=quiz_id)
    completed = [session for session in sessions if session.is_completed]

    durations = [
        (session.completed_at - session.started_at).total_seconds()
        for session in completed
    ]
    average_completion = round(sum(durations) / len(durations)) if durations else 0

    selections_by_question: dict[str, Counter] = defaultdict(Counter)
    for session in sessions:
        for selection in session_store.list_answer_selections(session.session_id):
            selections_by_question[selection.question_id][selection.answer_id] += 1

    questions = []
    for question_id in sorted(selections_by_question):
        counts = selections_by_question[question_id]
        total = sum(counts.values())
        answers = [
            AnswerStat(
                answer_id=answer_id,
                selection_count=count,
                selection_percentage=_percent(count, total),
            )
            for answer_id, count in sorted(
                counts.items(), key=lambda item: (-item[1], item[0])
            )
        ]
        questions.append(
            QuestionStat(question_id=question_id, total_responses=total, answers=answers)
        )

    summaries = analytics_store.list_summaries(
        shop, quiz_id=quiz_id, since=since.astimezone(tz).date()
    )
    until_date = until.astimezone(tz).date()
    daily = [
        DailyPerformance(
            summary_date=summary.summary_date,
            sessions=summary.session_count,
            completions=summary.completed_count,
            completion_rate=_percent(summary.completed_count, summary.session_count),
            attributed_orders=summary.attributed_order_count,
            attributed_revenue=summary.attributed_revenue,
            conversion_rate=_percent(
                summary.attributed_order_count, summary.completed_count
            ),
        )
        for summary in summaries
        if summary.summary_date <= until_date
    ]

    report = QuizReport(
        shop=shop,
        quiz_id=quiz_id,
        total_sessions=len(sessions),
        completed_sessions=len(completed),
        completion_rate=_percent(len(completed), len(sessions)),
        average_completion_seconds=average_completion,
        attributed_orders=sum(day.attributed_orders for day in daily),
        attributed_revenue=round(sum(day.attributed_revenue for day in daily), 2),
        questions=questions,
        daily=daily,
    )

    logger.debug(
        "Built report for quiz=%s shop=%s: %s sessions, %s days",
        quiz_id,
        shop,
        report.total_sessions,
        len(daily),
    )
    return report
